"""Lead capture — turns a finished call into a lead record."""
from __future__ import annotations

from typing import Any, Optional

import structlog

from database.store_base import BaseIvrStore
from utils.conditions import ANONYMOUS_CALLERS

logger = structlog.get_logger()


def _lead_status(record: dict[str, Any]) -> str:
    variables = record.get("variables") or {}
    if record.get("recording_url"):
        return "voicemail"
    if variables.get("transfer_destination"):
        return "transferred"
    if record.get("status") == "completed":
        return "completed"
    return "incomplete"


class LeadCapture:

    def __init__(self, store: BaseIvrStore, source: str = "ivr"):
        self.store = store
        self.source = source

    async def capture(self, record: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Save a lead for an identifiable caller. Anonymous callers are skipped."""
        caller = (record.get("caller") or "").strip()
        if caller.lower() in ANONYMOUS_CALLERS:
            logger.info("lead_skipped_anonymous", call_id=record.get("call_id"))
            return None

        lead = await self.store.save_lead({
            "call_id": record.get("call_id"),
            "workflow_id": record.get("workflow_id"),
            "phone_number": caller,
            "status": _lead_status(record),
            "source": self.source,
            "outcome": record.get("reason"),
            "last_inputs": record.get("last_inputs") or [],
            "recording_url": record.get("recording_url"),
            "metadata": {"log_id": record.get("log_id"), "callee": record.get("callee")},
        })
        logger.info("lead_captured", call_id=record.get("call_id"),
                    lead_id=lead.get("id"), status=lead.get("status"))
        return lead
