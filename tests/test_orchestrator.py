"""
Tests for batch orchestration.

Runs batches end to end against a real SQLite database with a scripted
executor standing in for the model.
"""

import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
from unittest.mock import Mock, patch

import pytest

from prompt_pipeline.core.errors import (
    GenerationError,
    GenerationTimeout,
    InvalidBatchError,
    PersistenceError,
    RateLimitExceeded,
    SecurityVerificationFailed,
)
from prompt_pipeline.core.executor import ModelConfig
from prompt_pipeline.core.jobs import JobStore
from prompt_pipeline.core.orchestrator import (
    PipelineOrchestrator,
    PipelineRun,
    PromptDescriptor,
    PromptStatus,
    RunState,
    StaticCreditGate,
    validate_batch,
)
from prompt_pipeline.core.quota import ActorIdentity, QuotaLedger, QuotaPolicy
from prompt_pipeline.core.sections import parse_sections
from prompt_pipeline.core.usage import UsageAccountant
from prompt_pipeline.storage.models import ActorType, JobStatus
from prompt_pipeline.storage.repository import (
    fetch_usage_records,
    initialize_schema,
    update_job_status,
)


class ScriptedExecutor:
    """Executor returning canned text, or raising, per prompt."""

    def __init__(self, responses: Optional[Dict[str, Union[str, Exception]]] = None):
        self.responses = responses or {}
        self.prompts: List[str] = []

    def execute(self, prompt: str, model_config: Optional[ModelConfig] = None) -> str:
        self.prompts.append(prompt)
        response = self.responses.get(prompt, f"answer to {prompt}")
        if isinstance(response, Exception):
            raise response
        return response


class TestBatchValidation:
    """Test dependency index validation."""

    def test_valid_batch(self):
        batch = [
            PromptDescriptor("a", "A"),
            PromptDescriptor("b", "B", depends_on=0),
            PromptDescriptor("c", "C", depends_on=[0, 1]),
        ]
        assert validate_batch(batch) == batch
        assert batch[1].depends_on == frozenset({0})

    @pytest.mark.parametrize("depends_on", [[1], [2], [-1]])
    def test_forward_self_and_negative_references_rejected(self, depends_on):
        batch = [PromptDescriptor("a", "A"), PromptDescriptor("b", "B", depends_on=depends_on)]

        with pytest.raises(InvalidBatchError, match="earlier prompts"):
            validate_batch(batch)

    def test_empty_batch_rejected(self):
        with pytest.raises(InvalidBatchError):
            validate_batch([])

    def test_empty_prompt_rejected(self):
        with pytest.raises(InvalidBatchError, match="prompt cannot be empty"):
            PromptDescriptor("  ", "A")

    def test_bad_label_rejected(self):
        with pytest.raises(InvalidBatchError):
            PromptDescriptor("a", "bad -->")


class TestPipelineRun:
    """Test run state helpers."""

    def test_progress_and_outputs(self):
        run = PipelineRun(prompts=[PromptDescriptor("a", "A"), PromptDescriptor("b", "B")])

        assert run.total_count == 2
        assert run.progress == 0.0
        assert [o.status for o in run.outcomes] == [PromptStatus.PENDING] * 2
        assert run.combined_output_legacy() == ""
        assert not run.is_finished


class TestPipelineOrchestrator:
    """End-to-end orchestration tests."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.now = datetime(2024, 1, 1, 12, 0, 0)
        self.job_store = JobStore(self.db_path)
        self.ledger = QuotaLedger(self.db_path, clock=lambda: self.now)
        self.accountant = UsageAccountant(self.db_path)
        self.executor = ScriptedExecutor()
        self.policies = {
            ActorType.AUTHENTICATED: QuotaPolicy(limit=5, window=timedelta(minutes=60)),
            ActorType.ANONYMOUS: QuotaPolicy(limit=2, window=timedelta(minutes=60)),
        }
        self.actor = ActorIdentity(user_id="user-1")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _orchestrator(self, credits: int = 1, **kwargs) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            job_store=self.job_store,
            quota_ledger=self.ledger,
            executor=self.executor,
            accountant=self.accountant,
            credit_gate=StaticCreditGate(credits),
            quota_policies=self.policies,
            **kwargs
        )

    def _jobs(self) -> list:
        return self.job_store.list_jobs(session_id="session-1")

    def test_missing_quota_policy(self):
        with pytest.raises(ValueError, match="Missing quota policies"):
            PipelineOrchestrator(
                self.job_store, self.ledger, self.executor, self.accountant,
                StaticCreditGate(1), {ActorType.AUTHENTICATED: self.policies[ActorType.AUTHENTICATED]}
            )

    def test_independent_prompts_all_succeed(self):
        prompts = [PromptDescriptor("first", "One"), PromptDescriptor("second", "Two")]

        run = self._orchestrator().run(prompts, self.actor, "session-1")

        assert run.state == RunState.COMPLETED
        assert run.has_credits is True
        assert run.executed_count == 2
        assert [s.content for s in run.structured_output] == ["answer to first", "answer to second"]
        assert parse_sections(run.combined_output_with_markers()) == run.structured_output

        jobs = self._jobs()
        assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        assert [j.label for j in jobs] == ["One", "Two"]
        assert all(j.processing_duration_ms is not None for j in jobs)
        assert all(j.actor_id == "user-1" for j in jobs)

        usage = fetch_usage_records(user_id="user-1", db_path=self.db_path)
        assert {u.request_id for u in usage} == {j.request_id for j in jobs}

    def test_failed_prerequisite_skips_dependent(self):
        self.executor.responses["first"] = GenerationError("Empty response from AI service")
        prompts = [PromptDescriptor("first", "One"), PromptDescriptor("second", "Two", depends_on=[0])]

        run = self._orchestrator().run(prompts, self.actor, "session-1")

        assert run.structured_output == []
        assert self.executor.prompts == ["first"]
        assert [o.status for o in run.outcomes] == [PromptStatus.FAILED, PromptStatus.SKIPPED]

        first, second = self._jobs()
        assert first.status == JobStatus.FAILED
        assert first.error_kind == "generation_error"
        assert first.error_message == "Empty response from AI service"
        assert second.status == JobStatus.FAILED
        assert second.error_kind == "dependency_failed"
        assert run.outcomes[1].error.failed_indices == (0,)
        assert fetch_usage_records(db_path=self.db_path) == []

    def test_unrelated_prompts_still_run_after_failure(self):
        self.executor.responses["b"] = GenerationError("boom")
        prompts = [
            PromptDescriptor("a", "A"),
            PromptDescriptor("b", "B"),
            PromptDescriptor("c", "C", depends_on=[0]),
            PromptDescriptor("d", "D", depends_on=[0, 1]),
        ]

        run = self._orchestrator().run(prompts, self.actor, "session-1")

        assert self.executor.prompts == ["a", "b", "c"]
        assert [s.label for s in run.structured_output] == ["A", "C"]
        assert [o.status for o in run.outcomes] == [
            PromptStatus.COMPLETED, PromptStatus.FAILED, PromptStatus.COMPLETED, PromptStatus.SKIPPED
        ]
        assert run.combined_output_legacy() == "answer to a\n\nanswer to c"

    def test_exhausted_quota_rejects_before_generation(self):
        for _ in range(5):
            self.ledger.check(self.actor, self.policies[ActorType.AUTHENTICATED])

        run = self._orchestrator().run([PromptDescriptor("first", "One")], self.actor, "session-1")

        assert self.executor.prompts == []
        assert run.outcomes[0].status == PromptStatus.FAILED
        assert isinstance(run.outcomes[0].error, RateLimitExceeded)
        (job,) = self._jobs()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "rate_limit_exceeded"

    def test_quota_exhausted_mid_batch(self):
        anonymous = ActorIdentity(ip="1.2.3.4", user_agent="ua")
        prompts = [PromptDescriptor(p, p.upper()) for p in ("a", "b", "c")]

        run = self._orchestrator().run(prompts, anonymous, "session-1")

        assert self.executor.prompts == ["a", "b"]
        assert [o.status for o in run.outcomes] == [
            PromptStatus.COMPLETED, PromptStatus.COMPLETED, PromptStatus.FAILED
        ]
        assert run.outcomes[2].error_kind == "rate_limit_exceeded"
        assert all(j.actor_id == anonymous.key for j in self._jobs())

    def test_quota_storage_failure_fails_closed(self):
        with patch.object(self.ledger, "check", side_effect=PersistenceError("locked")):
            run = self._orchestrator().run([PromptDescriptor("a", "A")], self.actor, "session-1")

        assert self.executor.prompts == []
        (job,) = self._jobs()
        assert job.error_kind == "persistence_error"

    def test_no_credits_creates_no_jobs(self):
        run = self._orchestrator(credits=0).run([PromptDescriptor("a", "A")], self.actor, "session-1")

        assert run.has_credits is False
        assert run.state == RunState.REJECTED
        assert run.executed_count == 0
        assert self._jobs() == []
        assert self.executor.prompts == []

    def test_progress_reported_after_each_prompt(self):
        self.executor.responses["b"] = GenerationError("boom")
        seen = []
        prompts = [
            PromptDescriptor("a", "A"),
            PromptDescriptor("b", "B"),
            PromptDescriptor("c", "C", depends_on=1),
        ]

        run = self._orchestrator().run(
            prompts, self.actor, "session-1",
            on_progress=lambda r: seen.append((r.executed_count, r.total_count))
        )

        assert seen == [(1, 3), (2, 3), (3, 3)]
        assert run.progress == 1.0

    def test_progress_callback_errors_do_not_stop_run(self):
        callback = Mock(side_effect=RuntimeError("ui went away"))

        run = self._orchestrator().run(
            [PromptDescriptor("a", "A"), PromptDescriptor("b", "B")],
            self.actor, "session-1",
            on_progress=callback
        )

        assert callback.call_count == 2
        assert run.state == RunState.COMPLETED

    def test_unexpected_executor_error_is_wrapped(self):
        self.executor.responses["a"] = RuntimeError("socket closed")

        run = self._orchestrator().run([PromptDescriptor("a", "A")], self.actor, "session-1")

        error = run.outcomes[0].error
        assert isinstance(error, GenerationError)
        assert "socket closed" in str(error)
        assert self._jobs()[0].error_kind == "generation_error"

    def test_usage_failure_keeps_job_completed(self):
        with patch.object(
            self.accountant, "estimate_and_record", side_effect=PersistenceError("disk full")
        ):
            run = self._orchestrator().run([PromptDescriptor("a", "A")], self.actor, "session-1")

        assert run.outcomes[0].status == PromptStatus.COMPLETED
        assert self._jobs()[0].status == JobStatus.COMPLETED

    def test_verification_failure_on_first_prompt_aborts(self):
        verifier = Mock(side_effect=SecurityVerificationFailed("Security verification failed"))
        orchestrator = self._orchestrator(verifier=verifier)

        with pytest.raises(SecurityVerificationFailed):
            orchestrator.run(
                [PromptDescriptor("a", "A"), PromptDescriptor("b", "B")], self.actor, "session-1"
            )

        assert self.executor.prompts == []
        assert self._jobs() == []
        verifier.assert_called_once_with(self.actor)

    def test_verification_failure_later_only_fails_that_prompt(self):
        verifier = Mock(side_effect=[None, SecurityVerificationFailed("bot"), None])
        prompts = [PromptDescriptor(p, p.upper()) for p in ("a", "b", "c")]

        run = self._orchestrator(verifier=verifier).run(prompts, self.actor, "session-1")

        assert self.executor.prompts == ["a", "c"]
        assert run.outcomes[1].error_kind == "security_verification_failed"
        assert run.state == RunState.COMPLETED

    def test_generation_timeout_is_persisted(self):
        self.executor.responses["a"] = GenerationTimeout("Generation exceeded 120s timeout")

        run = self._orchestrator().run([PromptDescriptor("a", "A")], self.actor, "session-1")

        assert run.outcomes[0].status == PromptStatus.FAILED
        (job,) = self._jobs()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "generation_timeout"
        assert job.processing_duration_ms is not None
        assert fetch_usage_records(db_path=self.db_path) == []

    def test_completion_write_failure_fails_job(self):
        """A job whose completed write fails is moved to failed, not left processing."""

        def flaky_update(request_id, expected_status, new_status, values, db_path):
            if new_status == JobStatus.COMPLETED:
                raise sqlite3.OperationalError("disk I/O error")
            return update_job_status(request_id, expected_status, new_status, values, db_path)

        with patch('prompt_pipeline.core.jobs.update_job_status', side_effect=flaky_update):
            run = self._orchestrator().run([PromptDescriptor("a", "A")], self.actor, "session-1")

        assert run.outcomes[0].status == PromptStatus.FAILED
        assert run.outcomes[0].error_kind == "persistence_error"
        (job,) = self._jobs()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "persistence_error"
        assert fetch_usage_records(db_path=self.db_path) == []

    def test_foreign_verifier_error_is_security_failure(self):
        verifier = Mock(side_effect=ConnectionError("bot-check service unreachable"))
        orchestrator = self._orchestrator(verifier=verifier)

        with pytest.raises(SecurityVerificationFailed, match="bot-check service unreachable"):
            orchestrator.run(
                [PromptDescriptor("a", "A"), PromptDescriptor("b", "B")], self.actor, "session-1"
            )

        assert self.executor.prompts == []
        assert self._jobs() == []

    def test_foreign_verifier_error_later_fails_only_that_prompt(self):
        verifier = Mock(side_effect=[None, ConnectionError("timeout"), None])
        prompts = [PromptDescriptor(p, p.upper()) for p in ("a", "b", "c")]

        run = self._orchestrator(verifier=verifier).run(prompts, self.actor, "session-1")

        assert run.state == RunState.COMPLETED
        assert run.executed_count == 3
        assert run.outcomes[1].error_kind == "security_verification_failed"
        assert self.executor.prompts == ["a", "c"]

    def test_cancel_stops_before_next_prompt(self):
        cancel_event = threading.Event()

        def on_progress(run):
            if run.executed_count == 1:
                cancel_event.set()

        run = self._orchestrator().run(
            [PromptDescriptor("a", "A"), PromptDescriptor("b", "B")],
            self.actor, "session-1",
            on_progress=on_progress,
            cancel_event=cancel_event
        )

        assert run.state == RunState.CANCELLED
        assert self.executor.prompts == ["a"]
        assert [o.status for o in run.outcomes] == [PromptStatus.COMPLETED, PromptStatus.CANCELLED]
        assert len(self._jobs()) == 1

    def test_submit_batch_returns_handle(self):
        with self._orchestrator() as orchestrator:
            handle = orchestrator.submit_batch(
                [PromptDescriptor("a", "A"), PromptDescriptor("b", "B", depends_on=0)],
                self.actor, "session-1"
            )
            run = handle.result(timeout=30)

        assert handle.done()
        assert run.state == RunState.COMPLETED
        assert handle.executed_count == handle.total_count == 2
        assert handle.has_credits is True
        assert handle.error is None
        assert handle.combined_output_with_markers() == (
            "<!-- SECTION_START: A -->\nanswer to a\n<!-- SECTION_END: A -->\n\n"
            "<!-- SECTION_START: B -->\nanswer to b\n<!-- SECTION_END: B -->"
        )

    def test_submit_batch_surfaces_abort(self):
        verifier = Mock(side_effect=SecurityVerificationFailed("bot"))
        with self._orchestrator(verifier=verifier) as orchestrator:
            handle = orchestrator.submit_batch([PromptDescriptor("a", "A")], self.actor, "session-1")

            with pytest.raises(SecurityVerificationFailed):
                handle.result(timeout=30)

        assert handle.state == RunState.ABORTED
        assert isinstance(handle.error, SecurityVerificationFailed)

    def test_submit_batch_validates_up_front(self):
        with self._orchestrator() as orchestrator:
            with pytest.raises(InvalidBatchError):
                orchestrator.submit_batch(
                    [PromptDescriptor("a", "A", depends_on=0)], self.actor, "session-1"
                )
