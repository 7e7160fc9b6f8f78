"""
HTTP surface over the authoritative record store.

PATCH carries the optimistic lock: a stale ``expected_version`` answers 409
with the server's current record so the client can build a conflict.
"""

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .schemas import (
    ClassificationListResponse,
    ClassificationResponse,
    ClassificationUpdateRequest,
    ConflictResponse,
    HealthResponse,
)
from ..core.config import VERSION, debug_enabled
from ..core.db import health_check
from ..core.errors import RecordNotFoundError, ValidationError, VersionConflictError
from ..core.record_store import SqliteRecordStore

from util.logging import audit_event, logger


def create_app(store: SqliteRecordStore = None) -> FastAPI:
    """Build the API around a record store (the default database when omitted)."""
    store = store or SqliteRecordStore()

    app = FastAPI(
        title="Classification Correction API",
        version=VERSION,
        description="Version-checked corrections of email classifications",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None
    )
    app.state.store = store

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check system health."""
        db_health = health_check(store.db_path)
        return HealthResponse(
            status="healthy" if db_health else "unhealthy",
            version=VERSION,
            db_health=db_health
        )

    @app.get("/classifications", response_model=ClassificationListResponse)
    def list_classifications():
        records = store.list_records()
        return ClassificationListResponse(
            items=[ClassificationResponse.from_record(r) for r in records],
            count=len(records)
        )

    @app.get("/classifications/{record_id}", response_model=ClassificationResponse)
    def get_classification(record_id: int):
        record = store.fetch(record_id)
        if not record:
            raise HTTPException(status_code=404, detail=f"Classification {record_id} not found")
        return ClassificationResponse.from_record(record)

    @app.patch("/classifications/{record_id}", response_model=ClassificationResponse)
    def update_classification(record_id: int, request: ClassificationUpdateRequest):
        """Apply a correction if ``expected_version`` still matches."""
        fields = request.fields()

        try:
            record = store.apply_update(record_id, fields, request.expected_version,
                                        corrected_by=request.corrected_by)
        except VersionConflictError as e:
            body = ConflictResponse(
                detail=str(e),
                current_record=ClassificationResponse.from_record(e.current_record)
            )
            return JSONResponse(status_code=409, content=body.model_dump(mode="json"))
        except RecordNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        audit_event("classification.corrected", {
            "record_id": record_id,
            "version": record.version,
            "corrected_by": record.corrected_by
        }, payload={name: value.value for name, value in fields.items()})

        return ClassificationResponse.from_record(record)

    logger.info(f"Correction API ready (version {VERSION})")
    return app
