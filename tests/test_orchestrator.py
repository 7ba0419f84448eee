"""Tests for the orchestrator."""

from __future__ import annotations

from pathlib import Path

import pytest

from repoforge.chat_client import MockChatClient
from repoforge.config import Config
from repoforge.errors import (
    ExternalServiceFailure,
    ExternalToolFailure,
    InvalidInput,
    IoFailure,
    NoFilesIdentifiedError,
    ResponseFormatError,
)
from repoforge.events import EventType, RecordingEventSink
from repoforge.file_resolver import ResolutionStrategy
from repoforge.orchestrator import (
    NO_CHANGES_MESSAGE,
    SUCCESS_MESSAGE,
    OrchestrationRequest,
    Orchestrator,
    RunState,
)


HELLO_CHANGES = """Here are the changes:
<changes>
  <file path="src/hello.js">
    <content>
function hello() {
  return 'Hello, world!';
}
module.exports = { hello };
    </content>
  </file>
</changes>"""


def _request(repo: Path, docs: Path, task: str = "Add a hello function") -> OrchestrationRequest:
    return OrchestrationRequest(repo_root=repo, docs_root=docs, task=task)


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def orchestrator(
    config: Config,
    mock_client: MockChatClient,
    fake_repomix,
    sink: RecordingEventSink,
) -> Orchestrator:
    return Orchestrator(config, chat_client=mock_client, repomix_runner=fake_repomix, event_sink=sink)


class TestOrchestratorRun:
    """Tests for the full pipeline."""

    def test_creates_new_file(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        result = orchestrator.run(_request(temp_repo, docs_dir))

        assert result.success is True
        assert result.message == SUCCESS_MESSAGE
        assert result.state == RunState.APPLIED
        assert result.to_dict() == {"success": True, "message": SUCCESS_MESSAGE}
        written = (temp_repo / "src" / "hello.js").read_text()
        assert written.startswith("function hello()")
        assert written.endswith("module.exports = { hello };")
        assert result.changes[0].strategy == ResolutionStrategy.NEW_FILE

    def test_prompts_carry_context(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        orchestrator.run(_request(temp_repo, docs_dir))

        identify, generate = mock_client.prompts
        assert "<repository>compressed</repository>" in identify
        assert "Use CommonJS modules." in identify
        assert "Add a hello function" in identify
        assert "<repository>targeted</repository>" in generate
        assert "Use CommonJS modules." in generate
        assert mock_client.models == ["gpt-4", "gpt-4"]

    def test_targeted_snapshot_uses_identified_files(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        fake_repomix,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue(
            '```json\n{"identifiedFiles": ["src/index.js", "src/utils/helper.js"]}\n```',
            HELLO_CHANGES,
        )

        orchestrator.run(_request(temp_repo, docs_dir))

        assert fake_repomix.calls[1] == ("targeted", ["src/index.js", "src/utils/helper.js"])

    def test_fuzzy_resolution(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue(
            '{"identifiedFiles": ["utils/helper.js"]}',
            '<changes><file path="utils/helper.js"><content>module.exports = { x: 1 };</content></file></changes>',
        )

        result = orchestrator.run(_request(temp_repo, docs_dir))

        assert result.success
        assert (temp_repo / "src" / "utils" / "helper.js").read_text() == "module.exports = { x: 1 };"
        assert not (temp_repo / "utils").exists()
        resolved = sink.of_type(EventType.FILE_RESOLVED)
        assert resolved[0].data["strategy"] == "fuzzy_unique"

    def test_request_model_override(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)
        request = OrchestrationRequest(
            repo_root=temp_repo, docs_root=docs_dir, task="t", model="gpt-4o"
        )

        orchestrator.run(request)

        assert mock_client.models == ["gpt-4o", "gpt-4o"]

    def test_docs_file_path(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        result = orchestrator.run(_request(temp_repo, docs_dir / "api_docs.md"))

        assert result.success

    def test_empty_change_set(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        before = {p: p.read_text() for p in temp_repo.rglob("*.js")}
        mock_client.queue('{"identifiedFiles": ["src/index.js"]}', "<changes></changes>")

        result = orchestrator.run(_request(temp_repo, docs_dir))

        assert result.success is False
        assert result.message == NO_CHANGES_MESSAGE
        assert result.no_changes
        assert {p: p.read_text() for p in temp_repo.rglob("*.js")} == before
        assert sink.of_type(EventType.RUN_COMPLETE)[0].data["success"] is False
        assert not sink.of_type(EventType.RUN_FAILED)


class TestOrchestratorFailures:
    """Tests for failure paths."""

    def test_blank_task(self, orchestrator: Orchestrator, temp_repo: Path, docs_dir: Path) -> None:
        with pytest.raises(InvalidInput) as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir, task="   "))

        assert exc_info.value.stage == "validate"

    def test_missing_repository(self, orchestrator: Orchestrator, tmp_path: Path) -> None:
        with pytest.raises(InvalidInput, match="does not exist"):
            orchestrator.run(_request(tmp_path / "missing", tmp_path))

    def test_missing_api_key(self, temp_repo: Path, docs_dir: Path, fake_repomix) -> None:
        orchestrator = Orchestrator(Config(repo_path=temp_repo), repomix_runner=fake_repomix)

        with pytest.raises(InvalidInput, match="API key"):
            orchestrator.run(_request(temp_repo, docs_dir))

        assert fake_repomix.calls == []

    def test_no_files_identified(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        fake_repomix,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": []}')

        with pytest.raises(NoFilesIdentifiedError) as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir))

        error = exc_info.value
        assert isinstance(error, ExternalServiceFailure)
        assert error.stage == "identify_files"
        failed = sink.of_type(EventType.RUN_FAILED)[0]
        assert error.correlation_id == failed.correlation_id
        assert len(fake_repomix.calls) == 1
        assert mock_client.call_count == 1

    def test_missing_identified_files_key(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"files": ["a.js"]}')

        with pytest.raises(ResponseFormatError, match="Failed to extract identifiedFiles"):
            orchestrator.run(_request(temp_repo, docs_dir))

    def test_compressed_snapshot_failure(
        self,
        config: Config,
        mock_client: MockChatClient,
        failing_repomix,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        orchestrator = Orchestrator(
            config,
            chat_client=mock_client,
            repomix_runner=failing_repomix("compressed"),
            event_sink=sink,
        )

        with pytest.raises(ExternalToolFailure) as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir))

        assert exc_info.value.stage == "compressed_context"
        assert exc_info.value.stderr == "boom"
        assert mock_client.call_count == 0
        assert sink.stages == []

    def test_targeted_snapshot_failure(
        self,
        config: Config,
        mock_client: MockChatClient,
        failing_repomix,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/index.js"]}')
        orchestrator = Orchestrator(
            config,
            chat_client=mock_client,
            repomix_runner=failing_repomix("targeted"),
            event_sink=sink,
        )

        with pytest.raises(ExternalToolFailure) as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir))

        assert exc_info.value.stage == "targeted_context"
        assert sink.stages == ["compressed_context", "identify_files"]

    def test_missing_documentation(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        tmp_path: Path,
    ) -> None:
        with pytest.raises(IoFailure, match="Failed to read file"):
            orchestrator.run(_request(temp_repo, tmp_path / "no-docs"))

        assert mock_client.call_count == 0

    def test_undecodable_documentation(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        (docs_dir / "api_docs.md").write_bytes(b"\xff\xfe bad")

        with pytest.raises(IoFailure, match="Failed to read file") as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir))

        error = exc_info.value
        assert error.stage == "compressed_context"
        failed = sink.of_type(EventType.RUN_FAILED)[0]
        assert failed.data["kind"] == "io_failure"
        assert error.correlation_id == failed.correlation_id
        assert mock_client.call_count == 0

    def test_model_failure(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.should_fail = True

        with pytest.raises(ExternalServiceFailure) as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir))

        assert exc_info.value.stage == "identify_files"

    def test_unparseable_changes(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/index.js"]}', "I cannot do that.")

        with pytest.raises(ResponseFormatError) as exc_info:
            orchestrator.run(_request(temp_repo, docs_dir))

        assert exc_info.value.stage == "generate_changes"


class TestOrchestratorEvents:
    """Tests for emitted events and run artifacts."""

    def test_event_sequence(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        result = orchestrator.run(_request(temp_repo, docs_dir))

        assert sink.events[0].type == EventType.RUN_START
        assert sink.events[-1].type == EventType.RUN_COMPLETE
        assert sink.stages == [
            "compressed_context",
            "identify_files",
            "targeted_context",
            "generate_changes",
            "apply",
        ]
        assert {e.correlation_id for e in sink.events} == {result.correlation_id}
        written = sink.of_type(EventType.FILE_WRITTEN)
        assert [Path(e.data["path"]).name for e in written] == ["hello.js"]

    def test_correlation_ids_are_unique(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        first = orchestrator.run(_request(temp_repo, docs_dir))
        second = orchestrator.run(_request(temp_repo, docs_dir))

        assert first.correlation_id != second.correlation_id

    def test_artifacts_removed(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        result = orchestrator.run(_request(temp_repo, docs_dir))

        assert not (temp_repo / "temp" / result.correlation_id).exists()

    def test_artifacts_removed_on_failure(
        self,
        orchestrator: Orchestrator,
        mock_client: MockChatClient,
        sink: RecordingEventSink,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        mock_client.queue('{"identifiedFiles": []}')

        with pytest.raises(NoFilesIdentifiedError):
            orchestrator.run(_request(temp_repo, docs_dir))

        cid = sink.events[0].correlation_id
        assert not (temp_repo / "temp" / cid).exists()

    def test_artifacts_kept(
        self,
        config: Config,
        mock_client: MockChatClient,
        fake_repomix,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        config.keep_artifacts = True
        orchestrator = Orchestrator(config, chat_client=mock_client, repomix_runner=fake_repomix)
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        result = orchestrator.run(_request(temp_repo, docs_dir))

        work_dir = temp_repo / "temp" / result.correlation_id
        assert (work_dir / "compressed_context.xml").read_text() == "<repository>compressed</repository>"
        assert (work_dir / "targeted_context.xml").read_text() == "<repository>targeted</repository>"

    def test_failing_sink_does_not_abort(
        self,
        config: Config,
        mock_client: MockChatClient,
        fake_repomix,
        temp_repo: Path,
        docs_dir: Path,
    ) -> None:
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("sink down")

        orchestrator = Orchestrator(
            config, chat_client=mock_client, repomix_runner=fake_repomix, event_sink=BrokenSink()
        )
        mock_client.queue('{"identifiedFiles": ["src/hello.js"]}', HELLO_CHANGES)

        assert orchestrator.run(_request(temp_repo, docs_dir)).success
