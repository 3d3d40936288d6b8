"""
slotgrab API Server - FastAPI Backend

Endpoints:
- POST /api/config   Configure a session (vendor login + address)
- POST /api/start    Start the acquisition run
- POST /api/stop     Stop the acquisition run
- GET  /api/status   Current status snapshot
- GET  /health       Heartbeat
- WS   /ws           Live log + status stream (ping after 30s of silence)

Responses use {"success": bool, "message": str, "data": ...}; misuse
returns HTTP 400 with success=false.
"""

import os
import logging
from contextlib import aclosing
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.run_control import AcquisitionController, ControlError
from core.session import Config

logger = logging.getLogger("slotgrab.api")


# ============================================================
# MODELS
# ============================================================

class ConfigRequest(BaseModel):
    """Field names match the browser UI's JSON."""
    authToken: str = ""
    barkId: str = ""
    floorId: int = 1
    deliveryType: int = 2
    longitude: str = ""
    latitude: str = ""
    deviceId: str = ""
    trackInfo: str = ""
    promotionId: str = Field("", max_length=2000)   # comma separated
    addressId: str = ""
    payMethod: int = 1
    deliveryFee: bool = False                        # require free delivery
    storeConf: str = ""
    isSelected: bool = False                         # only previously selected items

    def to_config(self) -> Config:
        return Config(
            auth_token=self.authToken,
            floor_id=self.floorId,
            delivery_type=self.deliveryType,
            longitude=self.longitude,
            latitude=self.latitude,
            device_id=self.deviceId,
            track_info=self.trackInfo,
            promotion_ids=tuple(p.strip() for p in self.promotionId.split(",") if p.strip()),
            address_id=self.addressId,
            pay_method=self.payMethod,
            require_free_delivery=self.deliveryFee,
            only_selected=self.isSelected,
            store_conf=self.storeConf,
            push_id=self.barkId,
        )


class APIResponse(BaseModel):
    success: bool
    message: str = ""
    data: Optional[Any] = None


def _fail(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=APIResponse(success=False, message=message).model_dump(exclude_none=True),
    )


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(controller: AcquisitionController) -> FastAPI:
    """Create the FastAPI app wired to one acquisition controller."""
    app = FastAPI(
        title="slotgrab",
        description="Delivery slot + order acquisition control surface.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================================
    # ROUTES
    # ============================================================

    @app.post("/api/config", response_model=APIResponse, response_model_exclude_none=True)
    async def configure(req: ConfigRequest):
        """Validate, log in to the vendor and establish a new session."""
        try:
            selected, addresses = await controller.configure(req.to_config())
        except ControlError as e:
            logger.warning(f"Configure rejected: {e}")
            return _fail(str(e))

        return APIResponse(
            success=True,
            message="configured",
            data={
                "addressList": [a.to_dict() for a in addresses],
                "selectedAddress": selected.to_dict(),
            },
        )

    @app.post("/api/start", response_model=APIResponse, response_model_exclude_none=True)
    async def start():
        try:
            await controller.start()
        except ControlError as e:
            return _fail(str(e))
        return APIResponse(success=True, message="started")

    @app.post("/api/stop", response_model=APIResponse, response_model_exclude_none=True)
    async def stop():
        await controller.stop()
        return APIResponse(success=True, message="stopped")

    @app.get("/api/status", response_model=APIResponse, response_model_exclude_none=True)
    async def status():
        snapshot = await controller.status()
        return APIResponse(success=True, data=snapshot.to_dict())

    @app.get("/health")
    async def health():
        return {"status": "ok", "running": controller.is_running}

    @app.websocket("/ws")
    async def websocket_stream(ws: WebSocket):
        """Relay hub messages to one browser until it disconnects."""
        await ws.accept()
        try:
            async with aclosing(controller.subscribe()) as stream:
                async for message in stream:
                    await ws.send_json(message)
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")
        except RuntimeError as e:
            # Sending on a socket the client already closed.
            logger.info(f"WebSocket write error: {e}")

    return app
