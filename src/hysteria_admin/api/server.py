import datetime
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from hysteria_admin.client_config import build_client_config, build_share_link, render_qr_png
from hysteria_admin.config import API_HOST, API_PORT, API_TOKEN, DB_PATH, FRONTEND_URL, LOG_FORMAT, LOG_LEVEL
from hysteria_admin.db.database import Database, StoreError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    async with Database(app.state.db_path) as db:
        await db.init_db()
    logger.info(f"Backend ready, database at {app.state.db_path}")
    yield


app = FastAPI(title="Hysteria Admin API", lifespan=lifespan)
app.state.db_path = DB_PATH

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Models
class UserCreate(BaseModel):
    domain: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    port: int = Field(443, ge=1, le=65535)
    obfs: str = 'salamander'
    package_name: str = 'basic'
    expired_at: Optional[str] = None
    limit_conn: int = Field(1, ge=1)
    is_active: bool = True


class UserUpdate(BaseModel):
    domain: Optional[str] = Field(None, min_length=1)
    password: Optional[str] = Field(None, min_length=1)
    port: Optional[int] = Field(None, ge=1, le=65535)
    obfs: Optional[str] = None
    package_name: Optional[str] = None
    expired_at: Optional[str] = None
    limit_conn: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class User(BaseModel):
    id: int
    domain: str
    port: int
    password: str
    obfs: str
    package_name: str
    expired_at: Optional[str] = None
    limit_conn: int
    is_active: bool
    created_at: Optional[str] = None


class Connection(BaseModel):
    id: int
    user_id: int
    ip_address: Optional[str] = None
    connected_at: Optional[str] = None
    disconnected_at: Optional[str] = None
    bytes_sent: int = 0
    bytes_received: int = 0


class UserStats(BaseModel):
    total_connections: int
    total_bytes_sent: int
    total_bytes_received: int
    last_connected: Optional[str] = None
    recent_connections: list[Connection] = []


# Auth
async def verify_token(x_token: str = Header(...)):
    if not secrets.compare_digest(x_token.encode(), API_TOKEN.encode()):
        raise HTTPException(status_code=401, detail="Invalid Token")


async def get_db(request: Request):
    db = Database(request.app.state.db_path)
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


async def get_existing_user(user_id: int, db: Database = Depends(get_db)):
    user = await db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Store error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# Endpoints
@app.get("/api/health")
async def health():
    return {"status": "OK", "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat()}


@app.get("/api/users", response_model=list[User], dependencies=[Depends(verify_token)])
async def list_users(db: Database = Depends(get_db)):
    return await db.list_users()


@app.post("/api/users", response_model=User, status_code=201, dependencies=[Depends(verify_token)])
async def create_user(user: UserCreate, db: Database = Depends(get_db)):
    created = await db.create_user(**user.model_dump())
    logger.info(f"Created user {created['id']} ({created['domain']})")
    return created


@app.get("/api/users/{user_id}", response_model=User, dependencies=[Depends(verify_token)])
async def get_user(user: dict = Depends(get_existing_user)):
    return user


@app.put("/api/users/{user_id}", response_model=User, dependencies=[Depends(verify_token)])
async def update_user(user_id: int, update: UserUpdate, db: Database = Depends(get_db)):
    user = await db.update_user(user_id, update.model_dump(exclude_unset=True))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.delete("/api/users/{user_id}", dependencies=[Depends(verify_token)])
async def delete_user(user_id: int, db: Database = Depends(get_db)):
    if not await db.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    logger.info(f"Deleted user {user_id}")
    return {"message": "User deleted successfully"}


@app.get("/api/users/{user_id}/connections", response_model=list[Connection], dependencies=[Depends(verify_token)])
async def list_user_connections(user_id: int, open_only: bool = False, limit: int = 100,
                                db: Database = Depends(get_db)):
    await get_existing_user(user_id, db)
    return await db.list_connections(user_id=user_id, open_only=open_only, limit=max(1, min(limit, 1000)))


@app.get("/api/users/{user_id}/config", dependencies=[Depends(verify_token)])
async def get_user_config(user: dict = Depends(get_existing_user)):
    """Client config and hysteria2:// share link for a user"""
    return {"config": build_client_config(user), "share_link": build_share_link(user)}


@app.get("/api/users/{user_id}/qr", dependencies=[Depends(verify_token)])
async def get_user_qr(user: dict = Depends(get_existing_user)):
    """Share link rendered as a PNG QR code"""
    return Response(content=render_qr_png(build_share_link(user)), media_type="image/png")


@app.get("/api/stats/{user_id}", response_model=UserStats, dependencies=[Depends(verify_token)])
async def get_user_stats(user_id: int, db: Database = Depends(get_db)):
    return await db.get_user_stats(user_id)


def main():
    logging.basicConfig(format=LOG_FORMAT, level=LOG_LEVEL)
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
