"""
Long-running action utilities

Some API calls (book upload-start and upload-finish) can take longer than an
HTTP request is allowed to. They are run as long-running actions:

1. The HTTP handler validates the request, calls start_long_running_action()
   and immediately responds 202 Accepted with an Operation-Location header.
2. start_long_running_action() records a Pending state in the actions table
   and invokes the long-running-actions Lambda asynchronously.
3. That Lambda runs the step and records its output (or failure).
4. The client polls GET /v1/status/{id} until the action is finished.

Action state transitions are conditional updates, so a state that has reached
Completed, Failed, Terminated or Canceled is never changed again.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

# Support both Lambda deployment and local development
try:
    import config
    from utils.dynamodb import build_update_params
    from utils.response import api_response
    from utils.validation import get_header
except ImportError:
    import bloom_api.config as config
    from bloom_api.utils.dynamodb import build_update_params
    from bloom_api.utils.response import api_response
    from bloom_api.utils.validation import get_header

logger = logging.getLogger(__name__)


class LongRunningAction(str, Enum):
    UPLOAD_START = "upload-start"
    UPLOAD_FINISH = "upload-finish"


class ActionStatus(str, Enum):
    """Status values stored in the actions table."""

    PENDING = "Pending"
    RUNNING = "Running"
    CONTINUED_AS_NEW = "ContinuedAsNew"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TERMINATED = "Terminated"
    CANCELED = "Canceled"


TERMINAL_STATUSES = {
    ActionStatus.COMPLETED,
    ActionStatus.FAILED,
    ActionStatus.TERMINATED,
    ActionStatus.CANCELED,
}

# Status names reported to API clients
# See https://github.com/microsoft/api-guidelines/blob/vNext/azure/Guidelines.md#post-or-delete-lro-pattern
PUBLIC_STATUSES = {
    ActionStatus.COMPLETED: "Succeeded",
    ActionStatus.RUNNING: "Running",
    ActionStatus.CONTINUED_AS_NEW: "Running",
    ActionStatus.FAILED: "Failed",
    ActionStatus.TERMINATED: "Failed",
    ActionStatus.CANCELED: "Canceled",
    ActionStatus.PENDING: "NotStarted",
}

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred while processing the request"


def handle_error(code: int | str, message: str) -> dict:
    """
    Build the result a step returns when it fails in a way it expects.

    The status endpoint recognizes this shape and reports the action as Failed.
    """
    return {"failed": True, "error": {"code": code, "message": message}}


def is_error_result(output: Any) -> bool:
    return isinstance(output, dict) and bool(output.get("error"))


def get_public_status(status: str | None) -> str:
    try:
        return PUBLIC_STATUSES[ActionStatus(status)]
    except ValueError:
        return "Unknown"


def start_long_running_action(action: LongRunningAction, params: dict) -> str:
    """
    Record a new action and hand it to the long-running-actions Lambda.

    Args:
        action: Which step to run
        params: JSON-serializable input for the step

    Returns:
        str: The action's instance id, used for polling its status
    """
    instance_id = uuid.uuid4().hex
    now = int(time.time())

    config.actions_table.put_item(
        Item={
            "id": instance_id,
            "action": LongRunningAction(action).value,
            "status": ActionStatus.PENDING.value,
            "createdAt": now,
            "updatedAt": now,
            "expiresAt": now + config.ACTION_STATE_TTL_SECONDS,
        },
        ConditionExpression="attribute_not_exists(id)",
    )

    config.lambda_client.invoke(
        FunctionName=config.LONG_RUNNING_ACTIONS_FUNCTION,
        InvocationType="Event",
        Payload=json.dumps({
            "instanceId": instance_id,
            "action": LongRunningAction(action).value,
            "params": params,
        }).encode("utf-8"),
    )

    logger.info(f"Started long-running action {action.value} with id {instance_id}")
    return instance_id


def get_action_state(instance_id: str) -> dict | None:
    response = config.actions_table.get_item(Key={"id": instance_id})
    return response.get("Item")


def _update_unfinished_action(instance_id: str, fields: dict[str, Any]) -> bool:
    """
    Update an action unless it has already reached a terminal state.

    Returns:
        bool: False if the action was already finished (or doesn't exist)
    """
    params = build_update_params(
        key={"id": instance_id},
        fields={**fields, "updatedAt": int(time.time())},
        condition_expression="#status IN (:pending, :running)",
        condition_values={
            ":pending": ActionStatus.PENDING.value,
            ":running": ActionStatus.RUNNING.value,
        },
        condition_names={"#status": "status"},
    )
    try:
        config.actions_table.update_item(**params)
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":  # type: ignore[typeddict-item]
            logger.warning(f"Action {instance_id} is not pending or running; leaving it unchanged")
            return False
        raise
    return True


def mark_action_running(instance_id: str) -> bool:
    """
    Move an action to Running.

    An action that is already Running may be re-run (the platform retries a
    worker invocation which timed out); a finished one may not.
    """
    return _update_unfinished_action(instance_id, {"status": ActionStatus.RUNNING.value})


def record_action_result(instance_id: str, status: ActionStatus, output: Any) -> bool:
    """
    Record the final status and output of an action.

    Args:
        instance_id: Action id
        status: A terminal status
        output: The step's return value, or the failure message

    Returns:
        bool: False if the action had already finished
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"{status} is not a terminal status")
    return _update_unfinished_action(
        instance_id,
        {"status": ActionStatus(status).value, "output": json.dumps(output)},
    )


def describe_action_state(state: dict) -> dict:
    """
    Build the status endpoint's response body for an action.

    Returns:
        dict: {id, status, result?} or {id, status: "Failed", error: {code, message}}
    """
    native_status = state.get("status")
    body: dict[str, Any] = {"id": state["id"], "status": get_public_status(native_status)}

    output = json.loads(state["output"]) if state.get("output") else None

    if native_status == ActionStatus.FAILED.value:
        # Something the step didn't handle
        body["error"] = {"code": 500, "message": output or UNEXPECTED_ERROR_MESSAGE}
    elif is_error_result(output):
        # A failure the step reported with handle_error()
        body["status"] = "Failed"
        body["error"] = output["error"]
    elif output is not None:
        body["result"] = output

    return body


def build_status_url(event: dict, instance_id: str) -> str:
    """
    Build the polling URL for an action from the request that started it.

    Example:
        request path /v1/books/new:upload-start on api.bloomlibrary.org
        # "https://api.bloomlibrary.org/v1/status/<instance_id>"
    """
    request_context = event.get("requestContext") or {}
    host = get_header(event, "Host") or request_context.get("domainName", "")
    path = request_context.get("path") or event.get("path") or ""
    root = path[: path.index("/v1/")] if "/v1/" in path else ""
    return f"https://{host}{root}/v1/status/{instance_id}"


def create_response_with_accepted_status_and_status_url(instance_id: str, event: dict) -> dict:
    """
    Respond 202 Accepted, pointing the client at the status endpoint.

    The body says "Running" rather than "NotStarted": on the happy path the
    action has already been handed off, and the client polls for the real status.
    """
    return api_response(
        202,
        {"id": instance_id, "status": "Running"},
        headers={"Operation-Location": build_status_url(event, instance_id)},
    )
