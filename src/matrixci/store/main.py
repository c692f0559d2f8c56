from __future__ import annotations

import hashlib
import os
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import sqlalchemy as sa
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel

from .db import make_engine, make_sessionmaker
from .models import ArtifactRecord, Base, now_utc
from .settings import StoreSettings

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")

# -------------------- Schemas --------------------

class ArtifactResponse(BaseModel):
    run_id: str
    identity: str
    filename: str
    size: int
    sha256: str
    location: str
    updated_at: datetime


def _check_name(kind: str, value: str) -> str:
    if not _NAME.match(value) or value in (".", ".."):
        raise HTTPException(status_code=400, detail=f"invalid {kind}: {value!r}")
    return value


def _location(run_id: str, identity: str) -> str:
    return f"/runs/{run_id}/artifacts/{identity}"


def _to_response(rec: ArtifactRecord) -> ArtifactResponse:
    return ArtifactResponse(
        run_id=rec.run_id,
        identity=rec.identity,
        filename=rec.filename,
        size=rec.size,
        sha256=rec.sha256,
        location=_location(rec.run_id, rec.identity),
        updated_at=rec.updated_at,
    )


def create_app(settings: StoreSettings | None = None) -> FastAPI:
    """
    Build the store app. Run with:

        uvicorn --factory matrixci.store.main:create_app
    """
    settings = settings or StoreSettings.from_env()
    engine = make_engine(settings.database_url)
    SessionLocal = make_sessionmaker(engine)
    storage = Path(settings.storage_dir).resolve()

    # -------------------- Startup --------------------

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        storage.mkdir(parents=True, exist_ok=True)
        url = sa.engine.make_url(settings.database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield
        await engine.dispose()

    app = FastAPI(title="matrixci artifact store", lifespan=lifespan)

    # -------------------- Endpoints --------------------

    @app.put("/runs/{run_id}/artifacts/{identity}", response_model=ArtifactResponse)
    async def put_artifact(
        run_id: str,
        identity: str,
        request: Request,
        x_filename: str | None = Header(default=None),
    ):
        """Store an archive under (run_id, identity); a second upload replaces the first."""
        _check_name("run id", run_id)
        _check_name("identity", identity)
        filename = _check_name("filename", Path(x_filename).name if x_filename else identity)

        body = await request.body()
        digest = hashlib.sha256(body).hexdigest()

        target_dir = storage / run_id / identity
        target_dir.mkdir(parents=True, exist_ok=True)
        tmp = target_dir / f".{filename}.{uuid.uuid4().hex}.tmp"
        tmp.write_bytes(body)
        os.replace(tmp, target_dir / filename)

        async with SessionLocal() as s:
            async with s.begin():
                q = sa.select(ArtifactRecord).where(
                    ArtifactRecord.run_id == run_id,
                    ArtifactRecord.identity == identity,
                )
                rec = (await s.execute(q)).scalar_one_or_none()
                previous = rec.filename if rec else None
                if rec:
                    rec.filename = filename
                    rec.size = len(body)
                    rec.sha256 = digest
                    rec.updated_at = now_utc()
                else:
                    stamp = now_utc()
                    rec = ArtifactRecord(
                        run_id=run_id,
                        identity=identity,
                        filename=filename,
                        size=len(body),
                        sha256=digest,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                    s.add(rec)
                await s.flush()
                response = _to_response(rec)

        if previous and previous != filename:
            (target_dir / previous).unlink(missing_ok=True)
        return response

    @app.get("/runs/{run_id}/artifacts", response_model=list[ArtifactResponse])
    async def list_artifacts(run_id: str):
        async with SessionLocal() as s:
            q = sa.select(ArtifactRecord).where(ArtifactRecord.run_id == run_id).order_by(ArtifactRecord.identity)
            rows = (await s.execute(q)).scalars().all()
            return [_to_response(r) for r in rows]

    @app.get("/runs/{run_id}/artifacts/{identity}")
    async def get_artifact(run_id: str, identity: str):
        """Download the archive published under identity."""
        _check_name("run id", run_id)
        _check_name("identity", identity)
        async with SessionLocal() as s:
            q = sa.select(ArtifactRecord).where(
                ArtifactRecord.run_id == run_id,
                ArtifactRecord.identity == identity,
            )
            rec = (await s.execute(q)).scalar_one_or_none()
            if not rec:
                raise HTTPException(status_code=404, detail="Artifact not found")
            path = storage / run_id / identity / rec.filename

        if not path.is_file():
            raise HTTPException(status_code=410, detail="Artifact record exists but file is gone")
        return FileResponse(path, filename=rec.filename, media_type="application/octet-stream")

    return app
