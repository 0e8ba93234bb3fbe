"""Tests for :class:`LearningPipeline` and the analyzers."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from mailsync.email.errors import UnknownAccountError
from mailsync.email.models import JobState, LearningOptions, MessageBody
from mailsync.learning import analyzer as analyzer_module
from mailsync.learning import pipeline as pipeline_module
from mailsync.learning.analyzer import BatchOutcome, OllamaPatternAnalyzer, PatternAnalyzer, parse_patterns
from mailsync.learning.pipeline import LearningPipeline

from tests.fakes import make_entry


class RecordingAnalyzer(PatternAnalyzer):
    """Analyzer that tags every message and can fail whole batches."""

    def __init__(self, failing_batches=()):
        self.failing_batches = set(failing_batches)
        self.batches = []

    def analyze_message(self, entry, body):
        return {"category": "work", "length": len(body.text or "")}

    def analyze_batch(self, items):
        self.batches.append([item.entry.message_id for item in items])
        if len(self.batches) in self.failing_batches:
            raise RuntimeError("model unavailable")
        return super().analyze_batch(items)


class DummyThread:
    """Run thread targets inline."""

    started = []

    def __init__(self, target, args=(), name=None, daemon=None):
        self.target = target
        self.args = args

    def start(self):
        DummyThread.started.append(self.args)
        self.target(*self.args)


@pytest.fixture
def indexed(repo, account, clock):
    entries = [
        make_entry(account.id, f"m{i}", sent_at=clock() - timedelta(days=1, minutes=i))
        for i in range(25)
    ]
    repo.insert_index_entries(entries)
    return entries


def make_pipeline(repo, content_cache, analyzer, clock, pauses):
    return LearningPipeline(
        repo,
        content_cache,
        analyzer,
        batch_pause_seconds=0.5,
        sleep=pauses.append,
        clock=clock,
    )


def test_job_with_failing_batch_still_completes(repo, account, content_cache, clock, indexed):
    """A failed batch counts its messages as failed and the job goes on."""
    analyzer = RecordingAnalyzer(failing_batches={2})
    pauses = []
    pipeline = make_pipeline(repo, content_cache, analyzer, clock, pauses)
    job_id = "job-1"
    repo.create_job(pipeline_module.LearningJob(id=job_id, account_id=account.id, user_id="user-1"))

    job = pipeline.run_job(job_id, LearningOptions(batch_size=10))

    assert job.state is JobState.COMPLETED
    assert (job.total, job.processed, job.succeeded, job.failed) == (25, 25, 15, 10)
    assert [len(b) for b in analyzer.batches] == [10, 10, 5]
    assert pauses == [0.5, 0.5]
    assert job.results["failed_batches"] == 1
    assert job.results["categories"] == {"work": 15}
    assert len(repo.results) == 15
    assert repo.count_analyzed(account.id, None) == 15
    assert repo.get_job(job_id).finished_at == clock()


def test_already_analyzed_messages_are_skipped(repo, account, content_cache, clock, indexed):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    repo.mark_analyzed(account.id, ["m0", "m1", "m2"], clock())
    repo.create_job(pipeline_module.LearningJob(id="j", account_id=account.id, user_id="user-1"))

    job = pipeline.run_job("j", LearningOptions(batch_size=50))

    assert job.skipped == 3
    assert job.total == 22
    assert job.succeeded == 22


def test_force_relearn_includes_everything(repo, account, content_cache, clock, indexed):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    repo.mark_analyzed(account.id, ["m0", "m1"], clock())
    repo.create_job(pipeline_module.LearningJob(id="j", account_id=account.id, user_id="user-1"))

    job = pipeline.run_job("j", LearningOptions(force_relearn=True, batch_size=50))

    assert (job.total, job.skipped) == (25, 0)


def test_selection_bounds(repo, account, content_cache, clock, indexed):
    old = make_entry(account.id, "ancient", sent_at=clock() - timedelta(days=400))
    repo.insert_index_entries([old])
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    repo.create_job(pipeline_module.LearningJob(id="j", account_id=account.id, user_id="user-1"))

    job = pipeline.run_job("j", LearningOptions(batch_size=50, max_messages=5, days_back=90))

    assert job.total == 5
    assert (account.id, "ancient") not in repo.results


def test_submit_reuses_active_job(repo, account, content_cache, clock, monkeypatch):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    repo.create_job(
        pipeline_module.LearningJob(
            id="running", account_id=account.id, user_id="user-1", state=JobState.RUNNING, started_at=clock()
        )
    )
    monkeypatch.setattr(pipeline_module.threading, "Thread", DummyThread)
    DummyThread.started = []

    assert pipeline.submit(account.id, "user-1") == "running"
    assert DummyThread.started == []


def test_submit_replaces_job_abandoned_by_dead_worker(repo, account, content_cache, clock, indexed, monkeypatch):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    repo.create_job(
        pipeline_module.LearningJob(
            id="stuck",
            account_id=account.id,
            user_id="user-1",
            state=JobState.RUNNING,
            created_at=clock() - timedelta(days=30),
            started_at=clock() - timedelta(days=30),
        )
    )
    monkeypatch.setattr(pipeline_module.threading, "Thread", DummyThread)
    DummyThread.started = []

    job_id = pipeline.submit(account.id, "user-1")

    assert job_id != "stuck"
    assert len(DummyThread.started) == 1
    stuck = repo.get_job("stuck")
    assert stuck.state is JobState.FAILED
    assert "abandoned" in stuck.error
    assert stuck.finished_at == clock()
    assert pipeline.status(job_id).state is JobState.COMPLETED


def test_submit_runs_job_in_background(repo, account, content_cache, clock, indexed, monkeypatch):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    monkeypatch.setattr(pipeline_module.threading, "Thread", DummyThread)
    DummyThread.started = []

    job_id = pipeline.submit(account.id, "user-1", LearningOptions(batch_size=25))

    assert len(DummyThread.started) == 1
    job = pipeline.status(job_id)
    assert job.state is JobState.COMPLETED
    assert job.succeeded == 25
    assert pipeline.status("missing") is None


def test_submit_unknown_account(repo, content_cache, clock):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])

    with pytest.raises(UnknownAccountError):
        pipeline.submit("missing", "user-1")


def test_pipeline_failure_marks_job_failed(repo, account, content_cache, clock, monkeypatch):
    pipeline = make_pipeline(repo, content_cache, RecordingAnalyzer(), clock, [])
    repo.create_job(pipeline_module.LearningJob(id="j", account_id=account.id, user_id="user-1"))

    def broken(*args, **kwargs):
        raise ConnectionError("database went away")

    monkeypatch.setattr(repo, "select_for_learning", broken)
    job = pipeline.run_job("j")

    assert job.state is JobState.FAILED
    assert "database went away" in job.error
    assert repo.get_job("j").finished_at is not None


def test_default_analyze_batch_isolates_message_failures():
    class Picky(PatternAnalyzer):
        def analyze_message(self, entry, body):
            if entry.message_id == "bad":
                raise ValueError("no json")
            return {"category": "ok"}

    items = [
        analyzer_module.AnalysisItem(make_entry("a", "good")),
        analyzer_module.AnalysisItem(make_entry("a", "bad")),
    ]
    outcome = Picky().analyze_batch(items)

    assert isinstance(outcome, BatchOutcome)
    assert list(outcome.patterns) == ["good"]
    assert outcome.failed == ["bad"]


def test_ollama_analyzer_parses_model_output():
    class FakeLLM:
        def __init__(self):
            self.messages = None

        def invoke(self, messages):
            self.messages = messages
            return SimpleNamespace(content='```json\n{"category": "support", "tone": "formal"}\n```')

    llm = FakeLLM()
    analyzer = OllamaPatternAnalyzer(model="m", base_url="http://localhost:11434", llm=llm)
    entry = make_entry("a", "m1", subject="Printer broken", sender="bob@example.com")

    patterns = analyzer.analyze_message(entry, MessageBody("a", "m1", text="It jams."))

    assert patterns["category"] == "support"
    assert patterns["direction"] == "received"
    assert "It jams." in llm.messages[1].content


def test_ollama_analyzer_builds_chat_model_lazily(monkeypatch):
    created = []

    def fake_chat(**kwargs):
        created.append(kwargs)
        return SimpleNamespace(invoke=lambda messages: SimpleNamespace(content='{"category": "x"}'))

    monkeypatch.setattr(analyzer_module, "ChatOllama", fake_chat)
    analyzer = OllamaPatternAnalyzer(model="mistral", base_url="http://ollama:11434", temperature=0.2)

    analyzer.analyze_message(make_entry("a", "m"), None)
    analyzer.analyze_message(make_entry("a", "n"), None)

    assert created == [{"model": "mistral", "base_url": "http://ollama:11434", "temperature": 0.2}]


@pytest.mark.parametrize("raw", ["no json here", "[1, 2]", "{broken"])
def test_parse_patterns_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_patterns(raw)
