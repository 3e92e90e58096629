from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from shipyard.credentials import CredentialKind, RegistryCredential
from shipyard.errors import ConfigurationError, CredentialFailure, StageFailure
from shipyard.models import PipelineRun, RunStatus, StageStatus
from shipyard.sandbox import CommandRunner
from shipyard.scheduler import StageGraph, StageScheduler
from shipyard.stages.base import StageContext, StageHandler, StageResult

from conftest import CountingCredentialProvider, pr_event, push_event


class RecordingStage(StageHandler):
    def __init__(self, name, needs=(), credential=None, journal=None, fail_with=None):
        self.name = name
        self.needs = tuple(needs)
        self.credential = credential
        self.journal = journal if journal is not None else []
        self.fail_with = fail_with
        self.received = []

    def execute(self, context, credential):
        self.journal.append(self.name)
        self.received.append(credential)
        # Every dependency must already be terminal-successful when we start.
        for dep in self.needs:
            assert context.run.stage(dep).status is StageStatus.SUCCEEDED
        if self.fail_with is not None:
            raise self.fail_with
        return StageResult(name=self.name, summary=f"{self.name} ok")


def _chain(journal: List[str], failing: Optional[str] = None, error=None) -> List[RecordingStage]:
    specs = [
        ("test", (), None),
        ("build", ("test",), None),
        ("push", ("build",), CredentialKind.REGISTRY),
        ("deploy", ("push",), CredentialKind.DEPLOY),
    ]
    return [
        RecordingStage(
            name,
            needs,
            credential,
            journal,
            fail_with=(error or StageFailure(name, "boom")) if name == failing else None,
        )
        for name, needs, credential in specs
    ]


def _context(tmp_path: Path, config, run: PipelineRun) -> StageContext:
    return StageContext(run=run, config=config, runner=CommandRunner(tmp_path, dry_run=True), workdir=tmp_path)


def _run(tmp_path, config, stages, event, eligible, credentials=None):
    run = PipelineRun(run_id="r1", event=event)
    scheduler = StageScheduler(StageGraph(stages), credentials or CountingCredentialProvider())
    scheduler.run(run, eligible, _context(tmp_path, config, run))
    return run


def test_graph_orders_by_dependencies_not_declaration():
    journal: List[str] = []
    stages = list(reversed(_chain(journal)))
    assert StageGraph(stages).names == ["test", "build", "push", "deploy"]


def test_graph_reports_transitive_dependents():
    graph = StageGraph(_chain([]))
    assert graph.dependents("test") == {"build", "push", "deploy"}
    assert graph.dependents("push") == {"deploy"}
    assert graph.dependents("deploy") == set()


def test_graph_rejects_unknown_dependency():
    with pytest.raises(ConfigurationError):
        StageGraph([RecordingStage("push", needs=("build",))])


def test_graph_rejects_cycles():
    with pytest.raises(ConfigurationError):
        StageGraph([RecordingStage("a", needs=("b",)), RecordingStage("b", needs=("a",))])


def test_graph_rejects_duplicate_names():
    with pytest.raises(ConfigurationError):
        StageGraph([RecordingStage("test"), RecordingStage("test")])


def test_all_stages_run_in_order_when_everything_passes(tmp_path, config, secrets):
    journal: List[str] = []
    run = _run(tmp_path, config, _chain(journal), push_event(), ["test", "build", "push", "deploy"])
    assert journal == ["test", "build", "push", "deploy"]
    assert run.status is RunStatus.SUCCEEDED
    assert set(run.stage_statuses().values()) == {"succeeded"}


def test_failed_test_skips_every_later_stage(tmp_path, config, secrets):
    journal: List[str] = []
    credentials = CountingCredentialProvider()
    run = _run(
        tmp_path,
        config,
        _chain(journal, failing="test"),
        push_event(),
        ["test", "build", "push", "deploy"],
        credentials,
    )
    assert journal == ["test"]
    assert run.status is RunStatus.FAILED
    assert run.stage("test").status is StageStatus.FAILED
    for name in ("build", "push", "deploy"):
        assert run.stage(name).status is StageStatus.SKIPPED
    assert credentials.loads == []


def test_ineligible_stages_are_skipped_not_failed(tmp_path, config):
    journal: List[str] = []
    credentials = CountingCredentialProvider()
    run = _run(tmp_path, config, _chain(journal), pr_event(), ["test"], credentials)
    assert journal == ["test"]
    assert run.status is RunStatus.SUCCEEDED
    assert [run.stage(name).status for name in ("build", "push", "deploy")] == [StageStatus.SKIPPED] * 3
    assert credentials.loads == []


def test_stage_without_credential_receives_none(tmp_path, config, secrets):
    stages = _chain([])
    _run(tmp_path, config, stages, push_event(), ["test", "build", "push", "deploy"])
    test_stage, build_stage, push_stage, deploy_stage = stages
    assert test_stage.received == [None]
    assert build_stage.received == [None]
    assert isinstance(push_stage.received[0], RegistryCredential)
    assert deploy_stage.received[0].kind is CredentialKind.DEPLOY


def test_credentials_are_discarded_when_the_stage_ends(tmp_path, config, secrets):
    credentials = CountingCredentialProvider()
    _run(tmp_path, config, _chain([]), push_event(), ["test", "build", "push", "deploy"], credentials)
    assert [kind for kind, _ in credentials.loads] == [CredentialKind.REGISTRY, CredentialKind.DEPLOY]
    assert all(credential.discarded for credential in credentials.issued)
    assert credentials.issued[0].token.get_secret_value() == ""


def test_credentials_are_discarded_even_when_the_stage_fails(tmp_path, config, secrets):
    credentials = CountingCredentialProvider()
    run = _run(
        tmp_path,
        config,
        _chain([], failing="push"),
        push_event(),
        ["test", "build", "push", "deploy"],
        credentials,
    )
    assert run.stage("deploy").status is StageStatus.SKIPPED
    assert [stage for _, stage in credentials.loads] == ["push"]
    assert credentials.issued[0].discarded


def test_missing_credential_fails_the_stage_as_credential_failure(tmp_path, config, monkeypatch):
    monkeypatch.delenv("SHIPYARD_REGISTRY_TOKEN", raising=False)
    monkeypatch.delenv("GHCR_PAT", raising=False)
    journal: List[str] = []
    run = _run(tmp_path, config, _chain(journal), push_event(), ["test", "build", "push", "deploy"])
    assert journal == ["test", "build"]
    assert run.stage("push").status is StageStatus.FAILED
    assert run.stage("push").error_kind == "credential"
    assert run.stage("deploy").status is StageStatus.SKIPPED


def test_credential_failure_kind_is_recorded(tmp_path, config, secrets):
    run = _run(
        tmp_path,
        config,
        _chain([], failing="deploy", error=CredentialFailure("deploy", "key rejected")),
        push_event(),
        ["test", "build", "push", "deploy"],
    )
    assert run.stage("deploy").error_kind == "credential"
    assert run.status is RunStatus.FAILED
    assert "key rejected" in run.error


def test_unexpected_exception_becomes_stage_failure(tmp_path, config):
    journal: List[str] = []
    run = _run(tmp_path, config, _chain(journal, failing="test", error=RuntimeError("kaboom")), pr_event(), ["test"])
    assert run.stage("test").status is StageStatus.FAILED
    assert run.stage("test").error_kind == "stage"
    assert "RuntimeError: kaboom" in run.error
