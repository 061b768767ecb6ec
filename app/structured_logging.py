"""
Structured Logging — JSON output with subsystem tags and deployment correlation.

Every workflow task sets ``deployment_id_var`` for its lifetime, so log lines
emitted anywhere below it (orchestrator, registries, provider adapters) carry
the deployment they belong to.
"""

import json
import logging
import sys
from contextvars import ContextVar
from enum import Enum

# Correlation id of the deployment workflow running in the current task
deployment_id_var: ContextVar[str] = ContextVar("deployment_id", default="")


class Subsystem(str, Enum):
    API = "api"
    DB = "db"
    FLEET = "fleet"
    TENANTS = "tenants"
    PLACEMENT = "placement"
    ORCHESTRATOR = "orchestrator"
    PROVIDER = "provider"


# Logger name prefix -> subsystem tag
_SUBSYSTEM_BY_LOGGER = {
    "app.api": Subsystem.API,
    "app.db": Subsystem.DB,
    "sqlalchemy": Subsystem.DB,
    "app.services.fleet_registry": Subsystem.FLEET,
    "app.services.tenant_registry": Subsystem.TENANTS,
    "app.services.capacity_allocator": Subsystem.PLACEMENT,
    "app.services.deployment_orchestrator": Subsystem.ORCHESTRATOR,
    "app.services.aws_service": Subsystem.PROVIDER,
    "app.services.simulated_provisioner": Subsystem.PROVIDER,
    "app.services.provisioner": Subsystem.PROVIDER,
}


def subsystem_for(logger_name: str) -> str:
    for prefix, subsystem in _SUBSYSTEM_BY_LOGGER.items():
        if logger_name == prefix or logger_name.startswith(prefix + "."):
            return subsystem.value
    return "general"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", None) or subsystem_for(record.name),
            "message": record.getMessage(),
            "logger": record.name,
        }

        dep_id = deployment_id_var.get("")
        if dep_id:
            log_entry["deployment_id"] = dep_id

        # Add exception info
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends the deployment id when one is set."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        dep_id = deployment_id_var.get("")
        return f"{line} [deployment={dep_id}]" if dep_id else line


_configured = False


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install a stdout handler on the root logger. Idempotent."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(ContextFormatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.getLevelName(level.upper()) if isinstance(level, str) else level)
    _configured = True
