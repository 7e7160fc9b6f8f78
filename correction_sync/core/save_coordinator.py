"""
Save coordinator - the edit session state machine and the single
version-checked save path shared by session saves, instant saves, undo and
offline replay.

    Idle --start_edit--> Editing --update_field--> Editing(dirty)
    Editing --save--> Saving --match--> Idle
                      Saving --mismatch--> Conflict
                      Saving --other error--> Error
    Conflict --force_overwrite (ok) | accept_server_version--> Idle
    Error --update_field / save--> Editing / Saving

Only one network save per record may be in flight; a second request for the
same record while one is outstanding is ignored, never queued.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Set

from .autosave import AutoSaveRecovery
from .errors import (
    EditStateError,
    NetworkError,
    RecordNotFoundError,
    UnknownServerError,
    ValidationError,
    VersionConflictError,
)
from .ports import RecordStore
from .schema import (
    ConflictDescriptor,
    DraftSnapshot,
    EditableRecord,
    EditSession,
    ErrorKind,
    FieldChange,
    SaveResult,
    SaveStatus,
    coerce_field_value,
    coerce_fields,
    fields_to_json,
)

from util.logging import logger


class SaveCoordinator:
    """Owns the active edit session and every write to the RecordStore."""

    def __init__(self, store: RecordStore, autosave: AutoSaveRecovery = None):
        self.store = store
        self.autosave = autosave
        self._records: Dict[int, EditableRecord] = {}
        self._session: Optional[EditSession] = None
        self._conflict: Optional[ConflictDescriptor] = None
        self._in_flight: Set[int] = set()
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Displayed records
    # ------------------------------------------------------------------

    def load_records(self, records: Iterable[EditableRecord]) -> None:
        """Replace the displayed record set (a refresh by the surrounding UI)."""
        self._records = {record.id: record for record in records}

        if self._session and self._session.record_id not in self._records:
            # Closed on the next interaction, not here: a save may still be running
            self._session.invalidated = True
            logger.log_operation("session.invalidated", "pending_close",
                                 {"record_id": self._session.record_id})

    def get_record(self, record_id: int) -> Optional[EditableRecord]:
        return self._records.get(record_id)

    @property
    def records(self) -> Dict[int, EditableRecord]:
        return dict(self._records)

    # ------------------------------------------------------------------
    # Session surface
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[EditSession]:
        return self._active_session()

    @property
    def editing_id(self) -> Optional[int]:
        session = self._active_session()
        return session.record_id if session else None

    @property
    def current_data(self) -> Optional[Dict[str, Any]]:
        session = self._active_session()
        return dict(session.current) if session else None

    @property
    def status(self) -> SaveStatus:
        session = self._active_session()
        return session.status if session else SaveStatus.IDLE

    @property
    def is_dirty(self) -> bool:
        session = self._active_session()
        return bool(session and session.dirty)

    @property
    def conflict_data(self) -> Optional[ConflictDescriptor]:
        return self._conflict if self._active_session() else None

    def is_saving(self, record_id: int) -> bool:
        return record_id in self._in_flight

    def start_edit(self, record_id: int) -> EditSession:
        """Open a session on a displayed record, closing any other session."""
        session = self._active_session()
        if session and session.record_id == record_id:
            return session

        record = self._records.get(record_id)
        if record is None:
            raise EditStateError(f"Record {record_id} is not displayed")

        if session:
            logger.log_operation("session.switch", "closed", {
                "from": session.record_id,
                "to": record_id,
                "had_unsaved_changes": session.dirty
            })
            self._close_session(clear_draft=False)

        self._session = EditSession.start(record)
        logger.log_operation("session.start", "editing", {"record_id": record_id, "version": record.version})
        return self._session

    def update_field(self, field: str, value: Any, record_id: int = None) -> EditSession:
        """Change one working value. Invalid values raise ValidationError locally."""
        coerced = coerce_field_value(field, value)

        session = self._active_session()
        if session is None or (record_id is not None and session.record_id != record_id):
            if record_id is None:
                raise EditStateError("No record is currently being edited")
            session = self.start_edit(record_id)

        if session.status == SaveStatus.SAVING:
            raise EditStateError("Cannot edit while a save is in progress")
        if session.status == SaveStatus.CONFLICT:
            raise EditStateError("Resolve the conflict before editing further")

        session.current[field] = coerced
        session.status = SaveStatus.EDITING

        if self.autosave:
            self.autosave.note_change(session.record_id, session.current, session.baseline.version)

        return session

    def cancel_edit(self) -> bool:
        """Discard the working copy without contacting the store."""
        session = self._active_session()
        if session is None:
            return True

        if session.status == SaveStatus.SAVING:
            logger.warning(f"Cancel ignored while record {session.record_id} is saving")
            return False

        logger.log_operation("session.cancel", "discarded", {"record_id": session.record_id})
        self._close_session(clear_draft=True)
        return True

    def detach_session(self) -> bool:
        """Close the session but keep its draft; its changes now live in the offline queue."""
        session = self._active_session()
        if session is None or session.status == SaveStatus.SAVING:
            return False

        logger.log_operation("session.detach", "queued", {"record_id": session.record_id})
        self._close_session(clear_draft=False)
        return True

    async def save(self) -> SaveResult:
        """Save the active session against its baseline version."""
        session = self._active_session()
        if session is None:
            return SaveResult(success=False, error="No record is currently being edited",
                              error_kind=ErrorKind.NO_SESSION)

        if session.status == SaveStatus.SAVING or session.record_id in self._in_flight:
            return _in_flight_result()

        if session.status == SaveStatus.CONFLICT:
            return SaveResult(success=False, conflict=self._conflict,
                              error="Resolve the conflict before saving", error_kind=ErrorKind.CONFLICT)

        if not session.dirty:
            return SaveResult(success=True, record=session.baseline, skipped=True)

        session.status = SaveStatus.SAVING
        result = await self.submit(session.record_id, dict(session.current),
                                   session.baseline.version, baseline=session.baseline)
        self._apply_session_outcome(session, result)
        return result

    async def instant_save(self, record_id: int, field: str, new_value: Any,
                           previous_value: Any) -> SaveResult:
        """Single-field save for always-editable cells; no session required.

        On success ``result.change`` holds the FieldChange an undo can invert.
        """
        try:
            coerced = coerce_field_value(field, new_value)
        except ValidationError as e:
            return SaveResult(success=False, error=str(e), error_kind=ErrorKind.VALIDATION)

        record = self._records.get(record_id)
        if record is None:
            return SaveResult(success=False, error=f"Record {record_id} is not displayed",
                              error_kind=ErrorKind.NOT_FOUND)

        result = await self.submit(record_id, {field: coerced}, record.version, baseline=record)

        if result.success:
            result.change = FieldChange(
                record_id=record_id,
                field=field,
                previous_value=getattr(previous_value, "value", previous_value),
                new_value=coerced.value,
            )
        elif result.is_conflict and self._active_session() is None:
            # Give the conflict a session so the resolution commands apply to it
            self._session = EditSession(
                record_id=record_id,
                baseline=result.conflict.baseline,
                current=dict(record.fields(), **result.conflict.mine),
                status=SaveStatus.CONFLICT,
            )
            self._conflict = result.conflict

        return result

    async def force_overwrite(self) -> SaveResult:
        """Keep-mine resolution: resubmit the working copy against the server's current version."""
        session = self._active_session()
        if session is None or self._conflict is None or session.status != SaveStatus.CONFLICT:
            return SaveResult(success=False, error="No conflict to resolve", error_kind=ErrorKind.NO_SESSION)

        server = self._conflict.server
        session.status = SaveStatus.SAVING
        logger.log_save(session.record_id, "force_overwrite", {"server_version": server.version})

        result = await self.submit(session.record_id, dict(session.current), server.version, baseline=server)
        self._apply_session_outcome(session, result)
        return result

    def accept_server_version(self) -> Optional[EditableRecord]:
        """Use-server resolution: drop the working copy and display the server record."""
        session = self._active_session()
        if session is None or self._conflict is None:
            return None

        server = self._conflict.server
        self._records[server.id] = server
        logger.log_operation("conflict.use_server", "resolved", {"record_id": server.id, "version": server.version})
        self._close_session(clear_draft=True)
        return server

    def begin_manual_merge(self) -> Optional[ConflictDescriptor]:
        """Rebase the session onto the server record and hand editing back to the user.

        The working values are kept as they are; nothing is merged or saved here.
        """
        session = self._active_session()
        if session is None or self._conflict is None:
            return None

        conflict = self._conflict
        session.baseline = conflict.server
        session.status = SaveStatus.EDITING
        self._conflict = None

        if self.autosave:
            self.autosave.note_change(session.record_id, session.current, session.baseline.version)

        logger.log_operation("conflict.merge", "manual_review", {
            "record_id": session.record_id,
            "rebased_to": conflict.server.version
        })
        return conflict

    def restore_draft(self, snapshot: DraftSnapshot) -> EditSession:
        """Reopen a recovered draft; its base version is kept so a stale draft conflicts."""
        record = self._records.get(snapshot.record_id)
        if record is None:
            raise EditStateError(f"Record {snapshot.record_id} is not displayed")

        session = self.start_edit(snapshot.record_id)
        session.baseline = record.with_fields({}, version=snapshot.base_version)
        session.current.update(coerce_fields(snapshot.fields))
        session.status = SaveStatus.EDITING

        logger.log_draft("restored", snapshot.record_id)
        return session

    # ------------------------------------------------------------------
    # Shared save path
    # ------------------------------------------------------------------

    async def submit(self, record_id: int, fields: Mapping[str, Any], expected_version: int,
                     baseline: EditableRecord = None) -> SaveResult:
        """Version-checked update with the per-record in-flight guard.

        Never raises for store failures; they come back classified in the
        SaveResult with the error message preserved.
        """
        if record_id in self._in_flight:
            return _in_flight_result()

        try:
            validated = coerce_fields(fields)
        except ValidationError as e:
            return SaveResult(success=False, error=str(e), error_kind=ErrorKind.VALIDATION)

        self._in_flight.add(record_id)
        logger.log_save(record_id, "started", {"expected_version": expected_version,
                                               "fields": fields_to_json(validated)})
        try:
            try:
                record = await self.store.update(record_id, validated, expected_version)
            except VersionConflictError as e:
                server = e.current_record or await self.store.get(record_id)
                conflict = ConflictDescriptor(
                    record_id=record_id,
                    baseline=self._baseline_for(record_id, expected_version, baseline, server),
                    server=server,
                    mine=validated,
                )
                logger.log_conflict(record_id, expected_version, server.version)
                return SaveResult(success=False, conflict=conflict, error=str(e),
                                  error_kind=ErrorKind.CONFLICT)
        except NetworkError as e:
            return self._failure(record_id, e, ErrorKind.NETWORK)
        except RecordNotFoundError as e:
            return self._failure(record_id, e, ErrorKind.NOT_FOUND)
        except UnknownServerError as e:
            return self._failure(record_id, e, ErrorKind.SERVER)
        except ValidationError as e:
            return self._failure(record_id, e, ErrorKind.VALIDATION)
        except Exception as e:
            # The store is external; anything it raises unexpectedly is a server error
            logger.error(f"Unexpected store failure for record {record_id}: {e!r}")
            return self._failure(record_id, e, ErrorKind.SERVER)
        finally:
            self._in_flight.discard(record_id)

        self._records[record.id] = record
        logger.log_save(record_id, "success", {"version": record.version})
        return SaveResult(success=True, record=record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_session(self) -> Optional[EditSession]:
        session = self._session
        if session and session.invalidated and session.status != SaveStatus.SAVING:
            logger.log_operation("session.invalidated", "closed", {"record_id": session.record_id})
            self._close_session(clear_draft=False)
            return None
        return session

    def _close_session(self, clear_draft: bool) -> None:
        self._session = None
        self._conflict = None
        if clear_draft and self.autosave:
            self.autosave.clear_saved_state()

    def _apply_session_outcome(self, session: EditSession, result: SaveResult) -> None:
        if self._session is not session:
            # Session was closed or replaced while the save ran; the result stands on its own
            return

        if result.success:
            self.last_error = None
            self._close_session(clear_draft=True)
        elif result.is_conflict:
            session.status = SaveStatus.CONFLICT
            self._conflict = result.conflict
        elif result.skipped:
            session.status = SaveStatus.EDITING
        else:
            session.status = SaveStatus.ERROR
            self.last_error = result.error

    def _baseline_for(self, record_id: int, expected_version: int,
                      baseline: Optional[EditableRecord], server: EditableRecord) -> EditableRecord:
        if baseline is not None and baseline.version == expected_version:
            return baseline
        # Only the version is known for sure (offline replay); fields are the best local knowledge
        known = baseline or self._records.get(record_id) or server
        return known.with_fields({}, version=expected_version)

    def _failure(self, record_id: int, error: Exception, kind: ErrorKind) -> SaveResult:
        logger.log_save(record_id, "error", {"kind": kind.value, "error": str(error)})
        return SaveResult(success=False, error=str(error), error_kind=kind)


def _in_flight_result() -> SaveResult:
    return SaveResult(success=False, skipped=True, error="Save already in progress",
                      error_kind=ErrorKind.IN_FLIGHT)
