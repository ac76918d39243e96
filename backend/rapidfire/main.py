from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .channel import rapid_fire_channel
from .db import settings
from .errors import StartRejected
from .events import event_store
from .game import controller
from .logging_config import configure_logging
from .models import RoundStatus
from .repository import repository
from .schemas import AdminUpsertQuestionsIn, EventsOut, RoundApprovalsIn

logger = configure_logging(settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await controller.shutdown()


app = FastAPI(title="Rapid Fire API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


@app.get("/")
async def root():
    return {"message": "Rapid Fire API", "status": "ok"}


@app.websocket("/ws/rapid-fire")
async def rapid_fire_socket(websocket: WebSocket):
    await rapid_fire_channel(websocket, controller)


@app.get("/api/rapid-fire/events", response_model=EventsOut)
async def list_events(after: int | None = None, limit: int = 200):
    events = await event_store.list(controller.stream, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.get("/api/admin/rapid-fire-status", response_model=RoundStatus)
async def rapid_fire_status():
    return controller.get_status()


@app.post("/api/admin/rapid-fire/start", response_model=RoundStatus)
async def start_rapid_fire(_: None = Depends(require_admin)):
    try:
        return await controller.start_round()
    except StartRejected as exc:
        raise HTTPException(status_code=400, detail=exc.reason) from exc


@app.post("/api/admin/rapid-fire/stop")
async def stop_rapid_fire(_: None = Depends(require_admin)):
    stopped = await controller.stop_round()
    return {"ok": True, "stopped": stopped}


@app.post("/api/admin/questions")
async def upsert_questions(payload: AdminUpsertQuestionsIn, _: None = Depends(require_admin)):
    round_number = payload.round_number or settings.RAPID_FIRE_ROUND
    await repository.replace_questions(round_number, payload.questions)
    logger.info("Replaced round %s questions (%s total)", round_number, len(payload.questions))
    return {"ok": True, "count": len(payload.questions)}


@app.post("/api/admin/round-approvals")
async def set_round_approvals(payload: RoundApprovalsIn, _: None = Depends(require_admin)):
    round_number = payload.round_number or settings.RAPID_FIRE_ROUND
    for approval in payload.approvals:
        await repository.set_round_approval(
            round_number,
            approval.user_id,
            approval.approved,
            first_name=approval.first_name,
            last_name=approval.last_name,
        )
    return {"ok": True, "count": len(payload.approvals)}


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
