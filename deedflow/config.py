"""Runtime configuration for the workflow engine.

Values come from environment variables with sensible defaults:

    DEEDFLOW_STORAGE_TIMEOUT       seconds per storage call (default 5.0)
    DEEDFLOW_LEGACY_LIMIT          legacy records read per collection per listing (default 10)
    DEEDFLOW_PAGE_SIZE             default list_unified page size (default 50)
    DEEDFLOW_REPORT_GENERATED_BY   name stamped on final reports (default "deedflow")
    DEEDFLOW_AUDIT_LOG_PATH        JSONL audit log file; unset keeps the log in memory
    DEEDFLOW_LOG_LEVEL             logging level for configure_logging (default INFO)
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class WorkflowConfig:
    storage_timeout: float = 5.0
    legacy_per_collection_limit: int = 10
    page_size: int = 50
    report_generated_by: str = "deedflow"
    audit_log_path: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WorkflowConfig":
        env = os.environ if environ is None else environ
        return cls(
            storage_timeout=float(env.get("DEEDFLOW_STORAGE_TIMEOUT", "5.0")),
            legacy_per_collection_limit=int(env.get("DEEDFLOW_LEGACY_LIMIT", "10")),
            page_size=int(env.get("DEEDFLOW_PAGE_SIZE", "50")),
            report_generated_by=env.get("DEEDFLOW_REPORT_GENERATED_BY", "deedflow"),
            audit_log_path=env.get("DEEDFLOW_AUDIT_LOG_PATH") or None,
            log_level=env.get("DEEDFLOW_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Attach a console handler to the ``deedflow`` logger."""
    logger = logging.getLogger("deedflow")
    logger.setLevel(level)
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    logger.addHandler(handler)


__all__ = ["WorkflowConfig", "configure_logging"]
