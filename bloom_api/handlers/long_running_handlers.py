"""
Lambda handlers for long-running actions

- long_running_action_handler: the worker, invoked asynchronously by
  start_long_running_action() to run one upload step
- status_handler: GET /v1/status/{operation-id}, polled by clients
"""

from __future__ import annotations

import logging
from typing import Callable

# Support both Lambda deployment and local development
try:
    # Lambda deployment
    from handlers.upload_finish import long_running_upload_finish
    from handlers.upload_start import long_running_upload_start
    from utils.long_running import (
        UNEXPECTED_ERROR_MESSAGE,
        ActionStatus,
        LongRunningAction,
        describe_action_state,
        get_action_state,
        mark_action_running,
        record_action_result,
    )
    from utils.response import api_response, error_response
    from utils.validation import get_path_param
except ImportError:
    # Local development
    from bloom_api.handlers.upload_finish import long_running_upload_finish
    from bloom_api.handlers.upload_start import long_running_upload_start
    from bloom_api.utils.long_running import (
        UNEXPECTED_ERROR_MESSAGE,
        ActionStatus,
        LongRunningAction,
        describe_action_state,
        get_action_state,
        mark_action_running,
        record_action_result,
    )
    from bloom_api.utils.response import api_response, error_response
    from bloom_api.utils.validation import get_path_param

logger = logging.getLogger()
logger.setLevel(logging.INFO)

ACTION_HANDLERS: dict[LongRunningAction, Callable[[dict], dict]] = {
    LongRunningAction.UPLOAD_START: long_running_upload_start,
    LongRunningAction.UPLOAD_FINISH: long_running_upload_finish,
}

RETRY_AFTER_SECONDS = "1"
UNFINISHED_PUBLIC_STATUSES = {"NotStarted", "Running"}


def long_running_action_handler(event, context):
    """
    Lambda handler which runs one long-running action.

    Event: {"instanceId": ..., "action": "upload-start" | "upload-finish", "params": {...}}

    The step's return value (including a typed error result) is recorded as
    Completed. An exception is recorded as Failed and not re-raised, so the
    platform's async retry doesn't run a half-finished step again.
    """
    instance_id = event.get("instanceId")
    logger.info(f"long_running_action_handler invoked for {event.get('action')} {instance_id}")

    if not instance_id:
        logger.error("Long-running action event has no instanceId")
        return {"status": "ignored"}

    if not mark_action_running(instance_id):
        # Already finished; a duplicate delivery of the same event
        return {"status": "ignored"}

    try:
        step = ACTION_HANDLERS[LongRunningAction(event.get("action"))]
        output = step(event.get("params") or {})
    except Exception as e:
        logger.error(f"Long-running action {instance_id} failed: {str(e)}", exc_info=True)
        record_action_result(instance_id, ActionStatus.FAILED, UNEXPECTED_ERROR_MESSAGE)
        return {"status": ActionStatus.FAILED.value}

    record_action_result(instance_id, ActionStatus.COMPLETED, output)
    return {"status": ActionStatus.COMPLETED.value}


def status_handler(event, context):
    """
    Lambda handler reporting the status of a long-running action.

    Returns {id, status, result?, error?}. While the action is not finished the
    response carries Retry-After so the client knows when to poll again.
    """
    logger.info("status_handler invoked")

    try:
        instance_id, error = get_path_param(event, "operation-id")
        if error:
            return error

        state = get_action_state(instance_id)
        if not state:
            return error_response(404, "Not Found", f"No operation with id {instance_id}")

        body = describe_action_state(state)
        headers = None
        if body["status"] in UNFINISHED_PUBLIC_STATUSES:
            headers = {"Retry-After": RETRY_AFTER_SECONDS}
        return api_response(200, body, headers=headers)

    except Exception as e:
        logger.error(f"Error getting operation status: {str(e)}", exc_info=True)
        return error_response(500, "Internal Server Error", "Failed to get operation status")
