"""
Study Import/Export Service
Scheduled Jobs.

Jobs:
    - staging_sweep: reclaims staging sessions older than STAGING_MAX_AGE_SECONDS
"""

from __future__ import annotations

import logging
from typing import Any

from studyport.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("staging_sweep")
def sweep_staging(app) -> dict[str, Any]:
    """Discard abandoned uploads and purge finished staging rows."""
    from studyport.services.staging_service import sweep_expired

    result = sweep_expired()
    logger.debug("staging_sweep result: %s", result)
    return result
