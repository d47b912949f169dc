"""
Scheduled Jobs — concrete job implementations.

Jobs:
    - change_escalation_sweep: applies approval-step timeout actions
      (auto_approve / auto_reject / escalate) for every active tenant
"""

from __future__ import annotations

import logging
from typing import Any

from change_engine.services.escalation import EscalationService
from change_engine.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("change_escalation_sweep")
def run_change_escalation_sweep(app) -> dict[str, Any]:
    """Apply timeout actions to overdue approval steps."""
    summary = EscalationService.sweep_timeouts()
    logger.info("change_escalation_sweep: %s", summary)
    return summary
