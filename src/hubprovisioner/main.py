"""Process entry point: logging, credentials and one provisioning run.

Exit codes:
    0  success (plan rendered, or apply converged)
    1  apply failed or was cancelled, or an unexpected error occurred
    2  pre-flight failure: configuration, parameters, graph construction or
       a missing existing resource; nothing was written
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from azure.core.exceptions import AzureError
from azure.identity import ManagedIdentityCredential

from .client import AzureResourceClient, CloudResourceClient
from .config import Config, ConfigurationError
from .engine import Provisioner
from .errors import CloudApiError, ProvisioningError
from .executor import ApplyResult, NodeStatus
from .spec_loader import SpecLoadError, load_params

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PREFLIGHT = 2

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging() -> None:
    """Configure structured JSON logging on stderr.

    stdout is reserved for the rendered plan.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Managed identity credential; user-assigned when a client id is given."""
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def create_client(config: Config) -> CloudResourceClient:
    return AzureResourceClient(
        create_credential(config.client_id),
        config.subscription_id,
        config.operation_timeout_seconds,
    )


def report(result: ApplyResult) -> None:
    """Print a human summary of an apply run to stderr."""
    for failure in result.failures:
        print(
            f"FAILED stage {failure.stage_index} node {failure.node_id}: {failure.cause}",
            file=sys.stderr,
        )
    skipped = result.with_status(NodeStatus.SKIPPED)
    if skipped:
        print(f"Not attempted: {', '.join(skipped)}", file=sys.stderr)
    state = "cancelled" if result.cancelled else ("succeeded" if result.success else "failed")
    print(
        f"Apply {state}: {result.changes_applied} changed, "
        f"{len(result.with_status(NodeStatus.UNCHANGED))} unchanged, "
        f"{result.stages_completed} stages completed",
        file=sys.stderr,
    )


async def execute(
    params_file: Path,
    *,
    dry_run: bool,
    output_format: str = "yaml",
    config: Config | None = None,
    client: CloudResourceClient | None = None,
) -> int:
    """Run one plan or apply and return the process exit code."""
    try:
        config = config or Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return EXIT_PREFLIGHT

    try:
        spec = load_params(params_file)
    except SpecLoadError as e:
        logger.error("Parameter loading failed", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return EXIT_PREFLIGHT

    dry_run = dry_run or config.dry_run
    logger.info(
        "Starting hub provisioning",
        extra={
            "hub": spec.name,
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group,
            "dry_run": dry_run,
        },
    )

    provisioner = Provisioner(config, client or create_client(config))

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        provisioner.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        if dry_run:
            plan = await provisioner.plan(spec)
            print(plan.render(output_format))
            return EXIT_OK

        result = await provisioner.apply(spec)
    except CloudApiError as e:
        logger.error("Cloud API error before apply", extra={"error": str(e), "kind": e.kind.value})
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    except ProvisioningError as e:
        logger.error(
            "Pre-flight check failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        print(str(e), file=sys.stderr)
        return EXIT_PREFLIGHT
    except AzureError as e:
        logger.exception("Azure SDK error", extra={"error": str(e)})
        return EXIT_FAILED
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    report(result)
    return EXIT_OK if result.success else EXIT_FAILED
