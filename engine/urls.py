"""Callback URLs embedded in voice instructions."""
from __future__ import annotations

from urllib.parse import urlencode

NEXT_STEP_PATH = "/ivr/next-step"
HANDLE_INPUT_PATH = "/ivr/handle-input"


def next_step_url(workflow_id: str, node_id: str, status: str = None) -> str:
    """
    Without ``status``: execute ``node_id`` on the next turn.
    With ``status``: ``node_id`` finished with that outcome (recorded, dial result).
    """
    params = {"workflowId": workflow_id, "currentNodeId": node_id}
    if status:
        params["status"] = status
    return f"{NEXT_STEP_PATH}?{urlencode(params)}"


def handle_input_url(workflow_id: str, node_id: str) -> str:
    return f"{HANDLE_INPUT_PATH}?{urlencode({'workflowId': workflow_id, 'currentNodeId': node_id})}"
