import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

import database
from database import DatabaseUnavailable, ensure_indexes, is_identity_ref, normalize_identity_ref
from directory import EmailTaken, InvalidCredentials, MessageLog, RoomDirectory, UserNotFound, UserStore
from realtime import Dispatcher, Session, SessionRegistry
from schemas import Frame, LoginUser, RegisterUser, UpdateUser

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


class WebSocketSession(Session):
    def __init__(self, websocket: WebSocket):
        super().__init__()
        self.websocket = websocket

    async def send(self, event, data):
        await self.websocket.send_json({"event": event, "data": data})


def create_app(db=None) -> FastAPI:
    """Build the API around a MongoDB database handle (defaults to database.db)."""
    if db is None:
        db = database.db

    users = UserStore(db)
    rooms = RoomDirectory(db)
    messages = MessageLog(db)
    registry = SessionRegistry(rooms)
    dispatcher = Dispatcher(registry, users, rooms, messages)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if db is not None:
            ensure_indexes(db)
        else:
            logger.warning("DATABASE_URL / DATABASE_NAME not set, persistence is unavailable")
        yield

    app = FastAPI(title="Chat App API", lifespan=lifespan)
    app.state.registry = registry
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------
    # Errors
    # -----------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
        return JSONResponse(status_code=400, content={"detail": f"Invalid or missing fields: {', '.join(fields)}"})

    @app.exception_handler(DatabaseUnavailable)
    async def database_unavailable(request: Request, exc: DatabaseUnavailable):
        logger.error("%s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Server error"})

    @app.exception_handler(Exception)
    async def server_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Server error"})

    # -----------------------------
    # Root & Health
    # -----------------------------

    @app.get("/")
    def read_root():
        return {"message": "Chat API is running"}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": [],
            "sessions": registry.session_count,
        }
        if db is None:
            return response
        response["database_name"] = getattr(db, "name", None)
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        return response

    # -----------------------------
    # Auth
    # -----------------------------

    @app.post("/api/auth/register", status_code=201)
    def register(payload: RegisterUser):
        try:
            return users.register(payload)
        except EmailTaken:
            raise HTTPException(status_code=409, detail="User already exists")

    @app.post("/api/auth/login")
    def login(payload: LoginUser):
        try:
            return users.authenticate(payload.email, payload.password)
        except InvalidCredentials:
            raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)

    # -----------------------------
    # Users
    # -----------------------------

    @app.get("/api/users")
    def list_users():
        return users.list_users()

    @app.put("/api/users/{user_id}")
    def update_user(user_id: str, payload: UpdateUser):
        if not is_identity_ref(user_id):
            raise HTTPException(status_code=400, detail="Invalid user id")
        user_id = normalize_identity_ref(user_id)
        try:
            return users.update(user_id, payload)
        except UserNotFound:
            raise HTTPException(status_code=404, detail="User not found")

    # -----------------------------
    # Rooms
    # -----------------------------

    @app.get("/api/rooms/{user_id}")
    def list_rooms(user_id: str):
        if not is_identity_ref(user_id):
            raise HTTPException(status_code=400, detail="Invalid user id")
        return rooms.list_for_user(normalize_identity_ref(user_id))

    # -----------------------------
    # Real-time
    # -----------------------------

    @app.websocket("/ws")
    async def realtime_socket(websocket: WebSocket):
        await websocket.accept()
        session = WebSocketSession(websocket)
        registry.connect(session)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.debug("Session %s closed by client", session.sid)
                    break
                raw = message.get("text")
                if raw is None:
                    logger.warning("Dropping non-text frame from %s", session.sid)
                    continue
                try:
                    frame = Frame.model_validate_json(raw)
                except ValidationError:
                    logger.warning("Dropping malformed frame from %s", session.sid)
                    continue
                await dispatcher.dispatch(session, frame.event, frame.data)
        except WebSocketDisconnect:
            logger.debug("Session %s closed by client", session.sid)
        finally:
            registry.disconnect(session)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
