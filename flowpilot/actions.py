"""
Names of the remote UI actions the engine dispatches through the gateway.

The remote agent owns the DOM work; flowpilot only sends these names plus
a params dict and reads back an ActionResult.
"""

from enum import Enum


class Action(str, Enum):
    # Workspace
    NAVIGATE = "NAVIGATE"
    CREATE_NEW_PROJECT = "CREATE_NEW_PROJECT"
    CHECK_FLOW_PAGE = "CHECK_FLOW_PAGE"
    CONFIGURE_SETTINGS = "CONFIGURE_SETTINGS"

    # Prompting
    ENTER_IMAGE_PROMPT = "ENTER_IMAGE_PROMPT"
    CLICK_GENERATE = "CLICK_GENERATE"

    # References
    ATTACH_REFERENCE_ADD_TO_PROMPT = "ATTACH_REFERENCE_ADD_TO_PROMPT"
    ATTACH_REFERENCE_UPLOAD = "ATTACH_REFERENCE_UPLOAD"
    ATTACH_REFERENCE_URL = "ATTACH_REFERENCE_URL"
    ATTACH_START_FRAME = "ATTACH_START_FRAME"
    ATTACH_END_FRAME = "ATTACH_END_FRAME"

    # Waiting / recovery
    WAIT_IMAGE_COMPLETE = "WAIT_IMAGE_COMPLETE"
    CLICK_RETRY_ICON = "CLICK_RETRY_ICON"
    CLICK_REUSE_PROMPT = "CLICK_REUSE_PROMPT"
    CLICK_REUSE_PROMPT_BUTTON = "CLICK_REUSE_PROMPT_BUTTON"

    # Queries
    COUNT_IMAGES = "COUNT_IMAGES"
    COUNT_PENDING_VIDEOS = "COUNT_PENDING_VIDEOS"
    COUNT_COMPLETED_VIDEOS = "COUNT_COMPLETED_VIDEOS"
    SWITCH_TO_VIDEOS_TAB = "SWITCH_TO_VIDEOS_TAB"
    GET_VIDEO_URLS = "GET_VIDEO_URLS"
