"""
API_APP
=======

FastAPI record-store server. Lets devices that cannot share a directory relay
through one machine: the server exposes a local ``RecordStore`` backend over
HTTP and ``HttpRecordStore`` is its client.

The server stores already-encoded field maps. Inline bodies arrive as base64
inside the fields; large bodies arrive separately as assets.

Endpoints:
    PUT    /records/{type}/{id}       Upsert ``{"fields": {...}}``
    GET    /records/{type}/{id}       Fetch (404 if missing)
    DELETE /records/{type}/{id}       Delete (404 if missing)
    POST   /records/{type}/query      ``{"conditions", "sort_by", "descending", "limit"}``
    PUT    /assets/{handle}           Store ``{"data": <base64>}``
    GET    /assets/{handle}           Raw bytes (404 if missing)
    DELETE /assets/{handle}           Delete
    GET    /health                    Health check

Status mapping: 404 not found, 409 record type not provisioned, 400 invalid
input.

Usage:
    python -m relay_core.cli store-server --port 8765
"""

import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..store import (
    Condition,
    RecordNotFoundError,
    RecordStore,
    SchemaNotProvisionedError,
    StoreError,
)

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class RecordBody(BaseModel):
    """Request body for writing a record."""
    fields: Dict[str, Any] = Field(..., description="Stored (already encoded) field map")


class QueryBody(BaseModel):
    """Request body for a record query."""
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    sort_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = Field(None, ge=1)


class AssetBody(BaseModel):
    data: str = Field(..., description="Base64-encoded asset bytes")


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    backend: str


# ============================================================================
# APP
# ============================================================================

def _raise_for(error: StoreError) -> None:
    if isinstance(error, RecordNotFoundError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, SchemaNotProvisionedError):
        raise HTTPException(status_code=409, detail=str(error))
    raise HTTPException(status_code=400, detail=str(error))


def create_app(store: Optional[RecordStore] = None) -> FastAPI:
    """Create the record-store API around ``store`` (built from config if omitted)."""
    if store is None:
        from ..config.loader import get_config_manager
        from ..runtime import build_local_store

        store = build_local_store(get_config_manager().global_config)

    app = FastAPI(
        title="relayCore Record Store",
        description="HTTP access to a relayCore record store",
        version=API_VERSION,
    )
    app.state.store = store

    # ========================================================================
    # HEALTH
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    def health_check():
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            backend=type(store).__name__,
        )

    # ========================================================================
    # RECORDS
    # ========================================================================

    @app.put("/records/{record_type}/{record_id}", tags=["Records"])
    def put_record(record_type: str, record_id: str, body: RecordBody):
        try:
            store.write_stored(record_type, record_id, body.fields)
        except StoreError as e:
            _raise_for(e)
        logger.debug(f"record_written: type={record_type} id={record_id}")
        return {"record_type": record_type, "record_id": record_id}

    @app.get("/records/{record_type}/{record_id}", tags=["Records"])
    def get_record(record_type: str, record_id: str):
        try:
            fields = store.stored_fields(record_type, record_id)
        except SchemaNotProvisionedError:
            raise HTTPException(status_code=404, detail=f"{record_type} record not found: {record_id}")
        except StoreError as e:
            _raise_for(e)
        return {"record_type": record_type, "record_id": record_id, "fields": fields}

    @app.delete("/records/{record_type}/{record_id}", tags=["Records"])
    def delete_record(record_type: str, record_id: str):
        try:
            store.stored_fields(record_type, record_id)
            store.delete(record_type, record_id)
        except SchemaNotProvisionedError:
            raise HTTPException(status_code=404, detail=f"{record_type} record not found: {record_id}")
        except StoreError as e:
            _raise_for(e)
        logger.debug(f"record_deleted: type={record_type} id={record_id}")
        return {"deleted": True}

    @app.post("/records/{record_type}/query", tags=["Records"])
    def query_records(record_type: str, body: QueryBody):
        try:
            conditions = [Condition.from_dict(c) for c in body.conditions]
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid condition: {e}")
        try:
            rows = store.select_stored(
                record_type,
                conditions,
                sort_by=body.sort_by,
                descending=body.descending,
                limit=body.limit,
            )
        except StoreError as e:
            _raise_for(e)
        return {"records": [{"record_id": record_id, "fields": fields} for record_id, fields in rows]}

    # ========================================================================
    # ASSETS
    # ========================================================================

    @app.put("/assets/{handle}", tags=["Assets"])
    def put_asset(handle: str, body: AssetBody):
        try:
            data = base64.b64decode(body.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid base64: {e}")
        try:
            store.assets.put(handle, data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.debug(f"asset_written: handle={handle} size={len(data)}")
        return {"handle": handle, "size": len(data)}

    @app.get("/assets/{handle}", tags=["Assets"])
    def get_asset(handle: str):
        try:
            data = store.assets.get(handle)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Asset not found: {handle}")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return Response(content=data, media_type="application/octet-stream")

    @app.delete("/assets/{handle}", tags=["Assets"])
    def delete_asset(handle: str):
        try:
            store.assets.delete(handle)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"deleted": True}

    return app


# ============================================================================
# MAIN
# ============================================================================

def main(host: str = "127.0.0.1", port: int = 8765, store: Optional[RecordStore] = None) -> None:
    """Run the record-store server."""
    import uvicorn

    app = create_app(store)
    logger.info(f"store_server_starting: host={host} port={port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
