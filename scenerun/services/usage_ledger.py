"""Cost-accounting ledger writes."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from scenerun.models.usage import ApiUsageLog
from scenerun.services.billing import ResolvedKey

logger = logging.getLogger(__name__)


def log_api_usage(
    db: Session,
    *,
    key: ResolvedKey,
    user_id: Optional[int],
    project_id: Optional[int],
    run_id: Optional[int],
    provider: str,
    model: str,
    operation: str,
    success: bool,
    cost_usd: float,
    duration_ms: int,
    metadata: Optional[Dict[str, Any]] = None,
) -> ApiUsageLog:
    """Add one ledger row to the session; the caller commits it with the outcome."""
    row = ApiUsageLog(
        user_id=user_id,
        project_id=project_id,
        run_id=run_id,
        provider=provider,
        model=model,
        operation=operation,
        api_key_source=key.source,
        sponsored_by_user_id=key.sponsor_user_id,
        status="success" if success else "failed",
        estimated_cost_usd=cost_usd if success else 0.0,
        duration_ms=duration_ms,
        metadata_json=metadata or {},
    )
    db.add(row)
    logger.info(
        f"Usage: {operation} {row.status} for project {project_id} "
        f"(source={key.source}, cost=${row.estimated_cost_usd:.4f})"
    )
    return row
