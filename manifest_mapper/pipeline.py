"""
Pipeline Orchestrator.

The central entry point that wires every layer together and drives one
import batch through an explicit state machine:

    ARCHIVIST  →  TRANSLATOR  →  (TRANSLATOR_REVIEW)  →  AUDITOR
               →  IMPORT  →  IMPROVEMENT  →  COMPLETE          (+ FAILED)

* ``state`` is the stage the batch last entered, ``stage_status`` how that
  stage's latest attempt ended.  Both are checkpointed in the store after
  every stage, so a fresh pipeline instance picks up where another left off.
* A low-confidence proposal parks the batch in TRANSLATOR_REVIEW; only
  ``confirm`` (with an edited mapping) moves it on.
* AUDITOR is the pre-import quality gate: sample rows are transformed in
  memory and audited without writing anything.  IMPORT persists, audits
  every stored record, applies AUTO_CORRECT recommendations and stores
  the enricher's derived values beside each record.
* Stage errors are recorded as that stage's status.  Only ingestion
  failures (bad source data, missing raw rows) fail the batch.

Usage
-----
>>> from manifest_mapper.pipeline import ImportPipeline
>>> pipe = ImportPipeline()
>>> status = pipe.ingest("batch-1", [{"headers": ["Container", "LFD"],
...                                   "data": {"Container": "MSCU1234567", "LFD": 45301}}])
>>> pipe.run("batch-1").state
<PipelineState.COMPLETE: 'COMPLETE'>
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from manifest_mapper.auditor import Auditor
from manifest_mapper.capture import RawCaptureStore
from manifest_mapper.config import PipelineConfig
from manifest_mapper.database import (
    create_store_engine,
    get_session_factory,
    init_store,
    session_scope,
    utcnow,
)
from manifest_mapper.dictionary import HeaderDictionary
from manifest_mapper.enricher import Enricher
from manifest_mapper.exceptions import (
    IngestionError,
    InvalidTransitionError,
    ManifestMapperError,
    MappingValidationError,
    NotFoundError,
)
from manifest_mapper.inference import FuzzyInference, InferenceCapability
from manifest_mapper.learner import ImprovementLearner
from manifest_mapper.logging_setup import configure_logging, get_logger
from manifest_mapper.models import (
    AuditResult,
    BatchStatus,
    FieldMapping,
    ImprovementRecord,
    MappingMethod,
    MappingProposal,
    PipelineState,
    RawRow,
    Recommendation,
    RowFailure,
    StageRun,
    StageStatus,
    UnmappedSource,
)
from manifest_mapper.normalizer import LabelNormalizer, ValueCoercer
from manifest_mapper.persister import Persister
from manifest_mapper.schema import CANONICAL_FIELDS, required_fields
from manifest_mapper.tables import AuditResultRow, ImportBatch, StageRunRow
from manifest_mapper.translator import Translator, overall_confidence
from manifest_mapper.validator import MappingValidator

logger = get_logger("pipeline")

S = PipelineState

TRANSITIONS: Dict[PipelineState, frozenset] = {
    S.ARCHIVIST: frozenset({S.TRANSLATOR, S.FAILED}),
    S.TRANSLATOR: frozenset({S.TRANSLATOR_REVIEW, S.AUDITOR, S.FAILED}),
    S.TRANSLATOR_REVIEW: frozenset({S.TRANSLATOR, S.AUDITOR, S.FAILED}),
    S.AUDITOR: frozenset({S.IMPORT, S.FAILED}),
    S.IMPORT: frozenset({S.IMPROVEMENT, S.FAILED}),
    S.IMPROVEMENT: frozenset({S.COMPLETE, S.FAILED}),
    S.COMPLETE: frozenset(),
    S.FAILED: frozenset(),
}

# What ``proceed`` moves to from each completed state
NEXT_STATE: Dict[PipelineState, PipelineState] = {
    S.ARCHIVIST: S.TRANSLATOR,
    S.TRANSLATOR: S.AUDITOR,
    S.AUDITOR: S.IMPORT,
    S.IMPORT: S.IMPROVEMENT,
    S.IMPROVEMENT: S.COMPLETE,
}

STAGE_ORDER: List[PipelineState] = [
    S.ARCHIVIST, S.TRANSLATOR, S.AUDITOR, S.IMPORT, S.IMPROVEMENT, S.COMPLETE,
]

RERUNNABLE = frozenset({S.TRANSLATOR, S.AUDITOR, S.IMPORT, S.IMPROVEMENT})

PREVIEW = "preview"
IMPORT_PHASE = "import"


def _position(state: PipelineState) -> int:
    if state is S.TRANSLATOR_REVIEW:
        state = S.TRANSLATOR
    return STAGE_ORDER.index(state)


class ImportPipeline:
    """Orchestrates capture, mapping, import, audit and learning per batch.

    Parameters
    ----------
    config:
        All tuneable knobs.  Defaults use an in-memory SQLite store.
    inference:
        Batched inference capability.  Defaults to ``FuzzyInference``; pass
        ``UnavailableInference()`` to run dictionary-only.
    session_factory:
        Use an existing store instead of creating one from
        ``config.database_url``.
    engine:
        Use an existing engine (ignored when *session_factory* is given).
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        inference: Optional[InferenceCapability] = None,
        session_factory: Optional[sessionmaker] = None,
        engine: Optional[Engine] = None,
        catalog: Optional[Iterable[str]] = None,
    ) -> None:
        self._config = config or PipelineConfig()

        # Bootstrap logging before anything else
        configure_logging(level=self._config.log_level)

        if session_factory is None:
            engine = engine or create_store_engine(self._config.database_url, self._config.echo_sql)
            session_factory = get_session_factory(engine)
        init_store(session_factory.kw["bind"])
        self._sessions = session_factory

        self._catalog = frozenset(catalog) if catalog is not None else CANONICAL_FIELDS
        normalizer = LabelNormalizer()
        coercer = ValueCoercer()
        self._inference = inference if inference is not None else FuzzyInference(
            self._config.mapping, normalizer, coercer
        )

        # Construct layers
        self.capture = RawCaptureStore(session_factory)
        self.dictionary = HeaderDictionary(
            session_factory, self._config.dictionary, normalizer, self._catalog
        )
        self.translator = Translator(
            self.dictionary, self._inference, self._config.mapping, normalizer
        )
        self.validator = MappingValidator(self._config.mapping, self._catalog)
        self.persister = Persister(session_factory, coercer)
        self.auditor = Auditor(self._config.audit, coercer)
        self.enricher = Enricher()
        self.learner = ImprovementLearner(
            session_factory, self.dictionary, self._inference, self._config.learning, self._catalog
        )

        if self._config.dictionary.seed_builtin_synonyms:
            self.dictionary.seed_builtin()
        if self._config.dictionary.custom_synonym_path:
            self.dictionary.load_custom_synonyms(self._config.dictionary.custom_synonym_path)

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

        logger.info(
            "Pipeline initialised — dictionary=%d, accept=%.2f, approve=%.2f, inference=%s",
            self.dictionary.size,
            self._config.mapping.dictionary_accept_threshold,
            self._config.mapping.batch_approval_threshold,
            type(self._inference).__name__,
        )

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def ingest(self, batch_id: str, rows: Sequence[Mapping[str, Any]]) -> BatchStatus:
        """Create *batch_id* and capture its rows (the ARCHIVIST stage).

        Raises
        ------
        IngestionError
            The rows are malformed; the batch is marked FAILED.
        InvalidTransitionError
            The batch already exists.
        """
        with self._lock_for(batch_id):
            with session_scope(self._sessions) as session:
                if session.get(ImportBatch, batch_id) is not None:
                    raise InvalidTransitionError(f"Batch {batch_id!r} already exists")
                session.add(ImportBatch(
                    id=batch_id,
                    state=S.ARCHIVIST.value,
                    stage_status=StageStatus.PENDING.value,
                    headers=[],
                ))

            def archive() -> Dict[str, Any]:
                ids = self.capture.append(batch_id, rows)
                headers: List[str] = []
                for row in rows:
                    for header in row["headers"]:
                        if str(header) not in headers:
                            headers.append(str(header))
                self._update_batch(batch_id, headers=headers, row_count=len(ids))
                return {"raw_rows": len(ids), "headers": len(headers)}

            self._execute(batch_id, S.ARCHIVIST, archive, {"rows": len(rows or [])})
            return self.status(batch_id)

    def proceed(self, batch_id: str) -> BatchStatus:
        """Advance to the next state and run its stage."""
        with self._lock_for(batch_id):
            batch = self._load_batch(batch_id)
            state = PipelineState(batch.state)

            if batch.stopped:
                raise InvalidTransitionError(f"Batch {batch_id!r} is stopped; resume it first")
            if state.is_terminal:
                raise InvalidTransitionError(f"Batch {batch_id!r} is {state.value}")
            if state is S.TRANSLATOR_REVIEW:
                raise InvalidTransitionError(
                    f"Batch {batch_id!r} needs a confirmed mapping before it can proceed"
                )
            if batch.stage_status != StageStatus.COMPLETED.value:
                raise InvalidTransitionError(
                    f"Stage {state.value} of {batch_id!r} is {batch.stage_status}; rerun it first"
                )

            target = NEXT_STATE[state]
            if target is S.AUDITOR and not self._proposal(batch).approved:
                raise InvalidTransitionError(f"Batch {batch_id!r} has no approved mapping")
            if (
                target is S.COMPLETE
                and self._has_blocking_findings(batch_id)
                and not batch.review_acknowledged
            ):
                logger.warning("Batch %r cannot complete: unacknowledged LOST findings", batch_id)
                raise InvalidTransitionError(
                    f"Batch {batch_id!r} has LOST findings without a correction; "
                    "acknowledge the manual review first"
                )
            self._run_stage(batch_id, target)
            return self.status(batch_id)

    def confirm(
        self,
        batch_id: str,
        mapping: Union[MappingProposal, Mapping[str, Any]],
    ) -> BatchStatus:
        """Approve an (edited) mapping and move on to the AUDITOR stage.

        *mapping* is either a ``MappingProposal`` or a mapping of canonical
        field to source header (a string) or to
        ``{"source_header": ..., "confidence": ...}``.  Fields confirmed by
        header only are recorded as manual mappings at confidence 1.0.

        Raises
        ------
        MappingValidationError
            The edited mapping is invalid; the batch stays where it is.
        """
        with self._lock_for(batch_id):
            batch = self._load_batch(batch_id)
            state = PipelineState(batch.state)
            if batch.stopped:
                raise InvalidTransitionError(f"Batch {batch_id!r} is stopped; resume it first")
            if state not in (S.TRANSLATOR, S.TRANSLATOR_REVIEW):
                raise InvalidTransitionError(
                    f"Batch {batch_id!r} cannot be confirmed in state {state.value}"
                )
            if batch.stage_status != StageStatus.COMPLETED.value:
                raise InvalidTransitionError(f"Batch {batch_id!r} has no finished proposal")

            previous = self._proposal(batch)
            field_mappings = self._edited_mappings(mapping)
            report = self.validator.validate(field_mappings, list(batch.headers))
            if not report.is_valid:
                raise MappingValidationError(report.errors)

            samples = self._raw_rows(batch_id)[: self._config.mapping.sample_size]
            mapped_headers = {m.source_header for m in field_mappings.values()}
            unmapped = {
                h: previous.unmapped_source_fields.get(h) or UnmappedSource(h, reason="excluded by operator")
                for h in batch.headers
                if h not in mapped_headers
            }
            confirmed = MappingProposal(
                headers=list(batch.headers),
                forwarder_guess=previous.forwarder_guess,
                field_mappings=field_mappings,
                unmapped_source_fields=unmapped,
                missing_schema_fields=[
                    f for f in required_fields() if f in self._catalog and f not in field_mappings
                ],
                overall_confidence=overall_confidence(field_mappings, samples),
                degraded=previous.degraded,
                approved=True,
            )

            run = self._start_run(batch_id, S.TRANSLATOR_REVIEW, {"confirmed_fields": len(field_mappings)})
            self._update_batch(batch_id, proposal=confirmed.to_dict(), last_error=None)
            self._finish_run(run, StageStatus.COMPLETED, {
                "overall_confidence": round(confirmed.overall_confidence, 4),
                "warnings": list(report.warnings),
            })
            logger.info(
                "Batch %r mapping confirmed — fields=%d, overall=%.3f",
                batch_id, len(field_mappings), confirmed.overall_confidence,
            )

            self._run_stage(batch_id, S.AUDITOR)
            return self.status(batch_id)

    def rerun(self, batch_id: str, stage: Optional[Union[PipelineState, str]] = None) -> BatchStatus:
        """Re-execute one stage against the batch's captured rows.

        *stage* defaults to the current one.  Raw capture is never redone.
        The translator may only be rerun while its proposal is still under
        consideration, since later stages depend on the approved mapping.
        """
        with self._lock_for(batch_id):
            batch = self._load_batch(batch_id)
            state = PipelineState(batch.state)
            target = PipelineState(stage) if stage is not None else state
            if target is S.TRANSLATOR_REVIEW:
                target = S.TRANSLATOR

            if target is S.ARCHIVIST:
                raise InvalidTransitionError("Raw capture is never re-run")
            if state is S.FAILED:
                raise InvalidTransitionError(f"Batch {batch_id!r} has FAILED")
            if target not in RERUNNABLE:
                raise InvalidTransitionError(f"Stage {target.value} cannot be re-run")
            if _position(target) > _position(state):
                raise InvalidTransitionError(
                    f"Stage {target.value} has not been reached by batch {batch_id!r}"
                )
            if target is S.TRANSLATOR and state not in (S.TRANSLATOR, S.TRANSLATOR_REVIEW):
                raise InvalidTransitionError(
                    "The translator cannot be re-run once a mapping has been approved"
                )

            self._run_stage(batch_id, target, rerun=True)
            return self.status(batch_id)

    def stop(self, batch_id: str) -> BatchStatus:
        """Halt automatic progression.  An in-flight stage is not interrupted."""
        batch = self._load_batch(batch_id)
        if PipelineState(batch.state).is_terminal:
            raise InvalidTransitionError(f"Batch {batch_id!r} is already {batch.state}")
        self._update_batch(batch_id, stopped=True)
        logger.info("Batch %r stopped at %s", batch_id, batch.state)
        return self.status(batch_id)

    def resume(self, batch_id: str) -> BatchStatus:
        self._load_batch(batch_id)
        self._update_batch(batch_id, stopped=False)
        logger.info("Batch %r resumed", batch_id)
        return self.status(batch_id)

    def acknowledge_review(self, batch_id: str) -> BatchStatus:
        """Record that an operator reviewed the batch's blocking LOST findings."""
        batch = self._load_batch(batch_id)
        if PipelineState(batch.state).is_terminal:
            raise InvalidTransitionError(f"Batch {batch_id!r} is already {batch.state}")
        self._update_batch(batch_id, review_acknowledged=True)
        logger.info("Batch %r: manual review acknowledged", batch_id)
        return self.status(batch_id)

    def run(self, batch_id: str) -> BatchStatus:
        """Proceed repeatedly until a gate, a failure, a stop or completion."""
        while True:
            status = self.status(batch_id)
            if (
                status.stopped
                or status.state.is_terminal
                or status.requires_confirmation
                or status.stage_status is not StageStatus.COMPLETED
            ):
                return status
            if status.state is S.IMPROVEMENT and status.review_required:
                return status
            self.proceed(batch_id)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def status(self, batch_id: str) -> BatchStatus:
        batch = self._load_batch(batch_id)
        state = PipelineState(batch.state)
        proposal = MappingProposal.from_dict(batch.proposal) if batch.proposal else None
        return BatchStatus(
            batch_id=batch.id,
            state=state,
            stage_status=StageStatus(batch.stage_status),
            last_error=batch.last_error,
            requires_confirmation=state is S.TRANSLATOR_REVIEW,
            stopped=batch.stopped,
            review_required=self._has_blocking_findings(batch_id) and not batch.review_acknowledged,
            proposal=proposal,
            row_count=batch.row_count,
        )

    def proposal(self, batch_id: str) -> MappingProposal:
        return self._proposal(self._load_batch(batch_id))

    def stage_log(self, batch_id: str) -> List[StageRun]:
        """Every stage attempt for *batch_id*, oldest first."""
        self._load_batch(batch_id)
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(StageRunRow).where(StageRunRow.batch_id == batch_id).order_by(StageRunRow.id)
            ).all()
            return [
                StageRun(
                    batch_id=r.batch_id,
                    stage=r.stage,
                    status=StageStatus(r.status),
                    started_at=r.started_at,
                    finished_at=r.finished_at,
                    input_summary=dict(r.input_summary or {}),
                    output_summary=dict(r.output_summary or {}),
                    error=r.error,
                    rerun=r.rerun,
                )
                for r in rows
            ]

    def audit_results(
        self, batch_id: str, phase: str = IMPORT_PHASE, include_superseded: bool = False
    ) -> List[AuditResult]:
        with session_scope(self._sessions) as session:
            query = select(AuditResultRow).where(
                AuditResultRow.batch_id == batch_id, AuditResultRow.phase == phase
            )
            if not include_superseded:
                query = query.where(AuditResultRow.superseded.is_(False))
            rows = session.scalars(query.order_by(AuditResultRow.id)).all()
            return [AuditResult.from_dict(r.result) for r in rows]

    def row_failures(self, batch_id: str) -> List[RowFailure]:
        return self.persister.failures_for(batch_id)

    def improvements(self, batch_id: str) -> List[ImprovementRecord]:
        return self.learner.records_for(batch_id)

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    def _run_stage(self, batch_id: str, stage: PipelineState, rerun: bool = False) -> None:
        handlers: Dict[PipelineState, Callable[[str], Dict[str, Any]]] = {
            S.TRANSLATOR: self._translate,
            S.AUDITOR: self._preview_audit,
            S.IMPORT: self._import,
            S.IMPROVEMENT: self._improve,
            S.COMPLETE: self._complete,
        }
        self._execute(
            batch_id,
            stage,
            lambda: handlers[stage](batch_id),
            {"row_count": self._load_batch(batch_id).row_count},
            rerun=rerun,
        )

    def _translate(self, batch_id: str) -> Dict[str, Any]:
        batch = self._load_batch(batch_id)
        samples = self._raw_rows(batch_id)[: self._config.mapping.sample_size]
        proposal = self.translator.propose(list(batch.headers), samples, self._catalog)

        review = self.translator.needs_confirmation(proposal)
        proposal.approved = not review
        self._update_batch(batch_id, proposal=proposal.to_dict())
        self._transition(batch_id, S.TRANSLATOR_REVIEW if review else S.TRANSLATOR)
        if review:
            logger.warning(
                "Batch %r needs confirmation: overall confidence %.3f < %.2f",
                batch_id, proposal.overall_confidence, self._config.mapping.batch_approval_threshold,
            )
        return {
            "mapped": len(proposal.field_mappings),
            "unmapped": len(proposal.unmapped_source_fields),
            "missing": list(proposal.missing_schema_fields),
            "overall_confidence": round(proposal.overall_confidence, 4),
            "degraded": proposal.degraded,
            "requires_confirmation": review,
        }

    def _preview_audit(self, batch_id: str) -> Dict[str, Any]:
        proposal = self._approved_proposal(batch_id)
        samples = self._raw_rows(batch_id)[: self._config.audit.preview_sample_size]

        results: List[AuditResult] = []
        skipped = 0
        for raw_row in samples:
            try:
                record = self.persister.build_record(raw_row, proposal)
            except ManifestMapperError as exc:
                logger.warning("Preview skipped row %d: %s", raw_row.row_index, exc)
                skipped += 1
                continue
            results.append(self.auditor.audit(record, raw_row, proposal))

        with session_scope(self._sessions) as session:
            session.execute(
                update(AuditResultRow)
                .where(AuditResultRow.batch_id == batch_id, AuditResultRow.phase == PREVIEW)
                .values(superseded=True)
            )
            for result in results:
                session.add(self._audit_row(batch_id, PREVIEW, result))

        summary = self._summarise(results)
        summary["rows_without_key"] = skipped
        return summary

    def _import(self, batch_id: str) -> Dict[str, Any]:
        proposal = self._approved_proposal(batch_id)
        raw_rows = self._raw_rows(batch_id)

        for mapping in proposal.field_mappings.values():
            if mapping.method is MappingMethod.DICTIONARY:
                self.dictionary.record_usage(mapping.source_header)

        report = self.persister.persist_batch(batch_id, raw_rows, proposal)
        by_id = {r.id: r for r in raw_rows}

        results: List[AuditResult] = []
        corrections = 0
        overtaken = 0
        enriched_fields = 0
        for container_number in report.persisted:
            record = self.persister.load_record(container_number)
            raw_row = by_id.get(record.lineage.raw_row_id)
            if raw_row is None:
                # A concurrent batch wrote the record last; its own import audits it
                logger.info(
                    "Skipping audit of %r: last written by batch %r", container_number, record.batch_id
                )
                overtaken += 1
                continue
            result = self.auditor.audit(record, raw_row, proposal)
            self._store_audit(batch_id, result)

            if result.recommendation is Recommendation.AUTO_CORRECT and self._config.audit.auto_correct:
                corrections += self.persister.apply_corrections(container_number, result.discrepancies)
                record = self.persister.load_record(container_number)
                result = self.auditor.audit(record, raw_row, proposal)
                self._store_audit(batch_id, result)

            self.persister.record_audit(container_number, result)
            results.append(result)

            if self._config.enrich_after_import:
                enrichment = self.enricher.enrich(record)
                self.persister.record_enrichment(container_number, enrichment)
                enriched_fields += len(enrichment.fields)

        summary = self._summarise(results)
        summary.update(report.to_dict())
        summary["corrections_applied"] = corrections
        summary["overtaken_by_other_batches"] = overtaken
        summary["derived_fields"] = enriched_fields
        return summary

    def _improve(self, batch_id: str) -> Dict[str, Any]:
        report = self.learner.learn(batch_id, self.audit_results(batch_id))
        return {"added": report.added, "skipped": report.skipped}

    def _complete(self, batch_id: str) -> Dict[str, Any]:
        batch = self._load_batch(batch_id)
        logger.info("Batch %r complete", batch_id)
        return {"acknowledged": bool(batch.review_acknowledged)}

    # ------------------------------------------------------------------ #
    # Execution and checkpoints
    # ------------------------------------------------------------------ #

    def _execute(
        self,
        batch_id: str,
        stage: PipelineState,
        fn: Callable[[], Dict[str, Any]],
        input_summary: Dict[str, Any],
        rerun: bool = False,
    ) -> None:
        """Run *fn* as *stage*, recording the attempt and checkpointing the batch.

        A rerun of an earlier stage leaves the batch's position unchanged.
        """
        batch = self._load_batch(batch_id)
        current = PipelineState(batch.state)
        moves = not rerun or stage is current or (
            stage is S.TRANSLATOR and current is S.TRANSLATOR_REVIEW
        )
        if moves and not rerun and stage is not current:
            self._transition(batch_id, stage)
        if moves:
            self._update_batch(batch_id, stage_status=StageStatus.RUNNING.value)

        run = self._start_run(batch_id, stage, input_summary, rerun)
        logger.info("Batch %r: %s stage %s", batch_id, "re-running" if rerun else "running", stage.value)

        try:
            output = fn()
        except IngestionError as exc:
            self._finish_run(run, StageStatus.FAILED, error=str(exc))
            self._update_batch(
                batch_id, state=S.FAILED.value,
                stage_status=StageStatus.FAILED.value, last_error=str(exc),
            )
            logger.error("Batch %r FAILED at %s: %s", batch_id, stage.value, exc)
            raise
        except (ManifestMapperError, SQLAlchemyError) as exc:
            self._finish_run(run, StageStatus.FAILED, error=str(exc))
            values: Dict[str, Any] = {"last_error": str(exc)}
            if moves:
                values["stage_status"] = StageStatus.FAILED.value
            self._update_batch(batch_id, **values)
            logger.warning("Batch %r stage %s failed: %s", batch_id, stage.value, exc)
            return
        except Exception as exc:
            # Unexpected errors still close the run so the batch never stays RUNNING
            self._finish_run(run, StageStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
            values = {"last_error": f"{type(exc).__name__}: {exc}"}
            if moves:
                values["stage_status"] = StageStatus.FAILED.value
            self._update_batch(batch_id, **values)
            logger.exception("Batch %r stage %s raised unexpectedly", batch_id, stage.value)
            return

        self._finish_run(run, StageStatus.COMPLETED, output)
        values = {"last_error": None}
        if moves:
            values["stage_status"] = StageStatus.COMPLETED.value
        self._update_batch(batch_id, **values)

    def _transition(self, batch_id: str, target: PipelineState) -> None:
        current = PipelineState(self._load_batch(batch_id).state)
        if target is current:
            return
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(f"{current.value} -> {target.value} is not allowed")
        self._update_batch(batch_id, state=target.value)
        logger.info("Batch %r: %s -> %s", batch_id, current.value, target.value)

    def _start_run(
        self, batch_id: str, stage: PipelineState, input_summary: Dict[str, Any], rerun: bool = False
    ) -> int:
        with session_scope(self._sessions) as session:
            row = StageRunRow(
                batch_id=batch_id,
                stage=stage.value,
                status=StageStatus.RUNNING.value,
                rerun=rerun,
                started_at=utcnow(),
                input_summary=dict(input_summary),
                output_summary={},
            )
            session.add(row)
            session.flush()
            return row.id

    def _finish_run(
        self,
        run_id: int,
        status: StageStatus,
        output_summary: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with session_scope(self._sessions) as session:
            session.execute(
                update(StageRunRow)
                .where(StageRunRow.id == run_id)
                .values(
                    status=status.value,
                    finished_at=utcnow(),
                    output_summary=dict(output_summary or {}),
                    error=error,
                )
            )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _lock_for(self, batch_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(batch_id, threading.RLock())

    def _load_batch(self, batch_id: str) -> ImportBatch:
        with session_scope(self._sessions) as session:
            batch = session.get(ImportBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id!r} not found")
            return batch

    def _update_batch(self, batch_id: str, **values: Any) -> None:
        values["updated_at"] = utcnow()
        with session_scope(self._sessions) as session:
            session.execute(update(ImportBatch).where(ImportBatch.id == batch_id).values(**values))

    def _raw_rows(self, batch_id: str) -> List[RawRow]:
        rows = self.capture.list_batch(batch_id)
        if not rows:
            raise IngestionError(f"Raw rows of batch {batch_id!r} are missing")
        return rows

    @staticmethod
    def _proposal(batch: ImportBatch) -> MappingProposal:
        if not batch.proposal:
            raise InvalidTransitionError(f"Batch {batch.id!r} has no mapping proposal")
        return MappingProposal.from_dict(batch.proposal)

    def _approved_proposal(self, batch_id: str) -> MappingProposal:
        proposal = self._proposal(self._load_batch(batch_id))
        if not proposal.approved:
            raise InvalidTransitionError(f"Batch {batch_id!r} has no approved mapping")
        return proposal

    @staticmethod
    def _edited_mappings(mapping: Union[MappingProposal, Mapping[str, Any]]) -> Dict[str, FieldMapping]:
        if isinstance(mapping, MappingProposal):
            return dict(mapping.field_mappings)
        edited: Dict[str, FieldMapping] = {}
        for canonical, entry in mapping.items():
            if isinstance(entry, FieldMapping):
                edited[canonical] = entry
            elif isinstance(entry, Mapping):
                edited[canonical] = FieldMapping(
                    source_header=str(entry["source_header"]),
                    confidence=float(entry.get("confidence", 1.0)),
                    method=MappingMethod.MANUAL,
                    reasoning=entry.get("reasoning", "confirmed by operator"),
                )
            else:
                edited[canonical] = FieldMapping(
                    str(entry), 1.0, MappingMethod.MANUAL, "confirmed by operator"
                )
        return edited

    def _store_audit(self, batch_id: str, result: AuditResult) -> None:
        """Supersede the container's previous import audit with *result*."""
        with session_scope(self._sessions) as session:
            session.execute(
                update(AuditResultRow)
                .where(
                    AuditResultRow.phase == IMPORT_PHASE,
                    AuditResultRow.container_number == result.container_number,
                    AuditResultRow.superseded.is_(False),
                )
                .values(superseded=True)
            )
            session.add(self._audit_row(batch_id, IMPORT_PHASE, result))

    @staticmethod
    def _audit_row(batch_id: str, phase: str, result: AuditResult) -> AuditResultRow:
        return AuditResultRow(
            batch_id=batch_id,
            phase=phase,
            container_number=result.container_number,
            raw_row_id=result.raw_row_id,
            capture_rate=result.capture_rate,
            recommendation=result.recommendation.value,
            blocking=result.blocking,
            result=result.to_dict(),
            superseded=False,
        )

    def _has_blocking_findings(self, batch_id: str) -> bool:
        with session_scope(self._sessions) as session:
            hit = session.scalar(
                select(AuditResultRow.id).where(
                    AuditResultRow.batch_id == batch_id,
                    AuditResultRow.phase == IMPORT_PHASE,
                    AuditResultRow.superseded.is_(False),
                    AuditResultRow.blocking.is_(True),
                ).limit(1)
            )
            return hit is not None

    @staticmethod
    def _summarise(results: List[AuditResult]) -> Dict[str, Any]:
        counts = {r.value: 0 for r in Recommendation}
        for result in results:
            counts[result.recommendation.value] += 1
        mean = sum(r.capture_rate for r in results) / len(results) if results else 1.0
        return {
            "audited": len(results),
            "mean_capture_rate": round(mean, 4),
            "recommendations": counts,
            "blocking": sum(1 for r in results if r.blocking),
        }
