"""Capability routes of the relay HTTP API.

Every route returns the uniform RelayResponse envelope; the HTTP status
reflects the envelope's error kind.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import JSONResponse

from ..audit import AuditCategory
from ..channel import StarletteChannel
from ..models import RelayResponse
from ..relay import Relay
from ..schemas import (
    AuditRequest,
    ClickElementRequest,
    FillInputRequest,
    InspectElementsRequest,
    RefreshBrowserRequest,
    ScreenshotRequest,
    SelectOptionRequest,
    SubmitFormRequest,
)
from .responses import envelope_response

logger = logging.getLogger(__name__)

router = APIRouter(
    responses={
        502: {"model": RelayResponse, "description": "Agent error or connection lost"},
        503: {"model": RelayResponse, "description": "Capture agent not connected"},
        504: {"model": RelayResponse, "description": "Agent did not answer in time"},
    }
)


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


@router.websocket("/extension-ws")
async def extension_socket(websocket: WebSocket):
    """Endpoint the capture agent connects to."""
    relay: Relay = websocket.app.state.relay
    await websocket.accept()
    client = websocket.client.host if websocket.client else None
    logger.info(f"Capture agent socket accepted from {client}")

    channel = StarletteChannel(websocket)
    await relay.accept_agent(channel)
    await channel.wait_closed()
    logger.info(f"Capture agent socket from {client} closed")


@router.get("/console-logs", tags=["Logs"], summary="Buffered console logs")
async def console_logs(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).console_logs())


@router.get("/console-errors", tags=["Logs"], summary="Buffered console errors")
async def console_errors(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).console_errors())


@router.get("/network-success", tags=["Logs"], summary="Buffered successful network requests")
async def network_success(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).network_success())


@router.get("/network-errors", tags=["Logs"], summary="Buffered failed network requests")
async def network_errors(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).network_errors())


@router.post("/wipelogs", tags=["Logs"], summary="Clear all log buffers")
async def wipe_logs(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).wipe_logs())


@router.post("/capture-screenshot", tags=["Capture"], summary="Capture the inspected tab")
async def capture_screenshot(request: Request, params: Optional[ScreenshotRequest] = None) -> JSONResponse:
    return envelope_response(await get_relay(request).capture_screenshot(params))


@router.get("/cookies", tags=["Storage"], summary="Cookies of the inspected page")
async def cookies(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).cookies())


@router.get("/local-storage", tags=["Storage"], summary="localStorage of the inspected page")
async def local_storage(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).local_storage())


@router.get("/session-storage", tags=["Storage"], summary="sessionStorage of the inspected page")
async def session_storage(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).session_storage())


@router.get("/current-url", tags=["Page"], summary="URL of the inspected tab")
async def current_url(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).current_url())


@router.get("/selected-element", tags=["Page"], summary="Element selected in DevTools")
async def selected_element(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).selected_element())


@router.post("/click-element", tags=["Interaction"], summary="Click an element or a point")
async def click_element(request: Request, params: ClickElementRequest) -> JSONResponse:
    return envelope_response(await get_relay(request).click_element(params))


@router.post("/fill-input", tags=["Interaction"], summary="Type into an input")
async def fill_input(request: Request, params: FillInputRequest) -> JSONResponse:
    return envelope_response(await get_relay(request).fill_input(params))


@router.post("/select-option", tags=["Interaction"], summary="Choose a select option")
async def select_option(request: Request, params: SelectOptionRequest) -> JSONResponse:
    return envelope_response(await get_relay(request).select_option(params))


@router.post("/submit-form", tags=["Interaction"], summary="Submit a form")
async def submit_form(request: Request, params: SubmitFormRequest) -> JSONResponse:
    return envelope_response(await get_relay(request).submit_form(params))


@router.post("/refresh-browser", tags=["Interaction"], summary="Reload the inspected tab")
async def refresh_browser(request: Request, params: Optional[RefreshBrowserRequest] = None) -> JSONResponse:
    return envelope_response(await get_relay(request).refresh_browser(params))


@router.post("/inspect-elements", tags=["Page"], summary="Inspect elements matching a selector")
async def inspect_elements(request: Request, params: InspectElementsRequest) -> JSONResponse:
    return envelope_response(await get_relay(request).inspect_elements(params))


@router.post("/audits/{category}", tags=["Audits"], summary="Run a Lighthouse audit")
async def run_audit(
    request: Request,
    category: AuditCategory,
    params: Optional[AuditRequest] = None
) -> JSONResponse:
    return envelope_response(await get_relay(request).run_audit(category, params))


@router.get("/status", tags=["System"], summary="Relay status")
async def status(request: Request) -> JSONResponse:
    return envelope_response(await get_relay(request).status())
