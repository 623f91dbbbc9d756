"""Tests for the resumable transfer session."""

import json
import os
from pathlib import Path

import pytest

from panupload.client.api import APIError, RemoteObject, TransportError
from panupload.client.upload import session as session_module
from panupload.client.state import ProgressStore
from panupload.client.upload import (
    Deduped,
    EmptyFileError,
    LocalIOError,
    NeedsUpload,
    ProgressConflictError,
    RemoteProtocolError,
    RemoteTransportError,
    TransferProgress,
    TransferSession,
    UploadPhase,
)
from panupload.core.config import ServerConfig, UploadConfig
from panupload.core.hashing import compute_file_hash
from tests.client.fakes import FakeRemote

MiB = 1024 * 1024


@pytest.fixture
def config(tmp_path: Path) -> UploadConfig:
    """Small thresholds: 16-byte chunks, probe above 32 bytes."""
    return UploadConfig(
        chunk_size=16,
        probe_threshold=32,
        slice_size=8,
        progress_path=tmp_path / "state" / "progress.json",
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


def make_session(remote: FakeRemote, config: UploadConfig, **kwargs: object) -> TransferSession:
    """Create a session with a fresh store, as a new process would."""
    store = ProgressStore(config.progress_path, config)
    return TransferSession(remote, store, config, **kwargs)  # type: ignore[arg-type]


def write_file(path: Path, size: int) -> Path:
    path.write_bytes(os.urandom(size))
    return path


def persisted(config: UploadConfig) -> dict:
    return json.loads(config.progress_path.read_text(encoding="utf-8"))


class TestWholeShot:
    """Tests for files that fit in one chunk."""

    def test_uploads_small_file(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """A small file is opened unchunked, sent once and finalized."""
        path = write_file(tmp_path / "notes.txt", 10)

        result = make_session(remote, config).upload(path, "/backup")

        assert result.path == "/backup/notes.txt"
        assert result.size == 10
        assert remote.operations() == ["open_session", "put_chunk", "finalize"]
        open_args = remote.calls[0][1]
        assert open_args[3] is False  # chunked
        assert open_args[4] == 1

    def test_small_file_not_probed(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """Files at or below the probe threshold skip the dedup check."""
        path = write_file(tmp_path / "a.bin", 32)

        make_session(remote, config).upload(path, "/dst")

        assert "probe_existing" not in remote.operations()

    def test_display_name(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """display_name replaces the local file name remotely."""
        path = write_file(tmp_path / "tmp-1234.bin", 5)

        result = make_session(remote, config).upload(path, "/dst", "report.pdf")

        assert result.path == "/dst/report.pdf"

    def test_remote_path(self) -> None:
        """Remote path joins the destination directory and the name."""
        assert TransferSession.remote_path(Path("/tmp/a.bin"), "/dst") == "/dst/a.bin"
        assert TransferSession.remote_path(Path("/tmp/a.bin"), "/dst/", "b") == "/dst/b"


class TestRejections:
    """Tests for files rejected before any network call."""

    def test_empty_file(self, tmp_path: Path, remote: FakeRemote, config: UploadConfig) -> None:
        """Zero-byte files fail fast without touching the remote."""
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")

        with pytest.raises(EmptyFileError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.PREPARE
        assert exc_info.value.local_path == path
        assert remote.calls == []

    def test_missing_file(self, tmp_path: Path, remote: FakeRemote, config: UploadConfig) -> None:
        """A missing file raises LocalIOError without any network call."""
        path = tmp_path / "missing.bin"

        with pytest.raises(LocalIOError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.PREPARE
        assert isinstance(exc_info.value.__cause__, FileNotFoundError)
        assert str(path) in str(exc_info.value)
        assert remote.calls == []


class TestDedup:
    """Tests for the rapid-upload short-circuit."""

    def test_dedup_hit_skips_transfer(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """A probe hit never opens a session or sends a chunk."""
        path = write_file(tmp_path / "movie.mkv", 100)
        content_hash = compute_file_hash(path)
        remote.objects[content_hash] = RemoteObject(id="obj-99", path="/old/movie.mkv", size=100)

        result = make_session(remote, config).upload(path, "/dst")

        assert result.id == "obj-99"
        assert result.path == "/dst/movie.mkv"
        assert remote.operations() == ["probe_existing"]
        assert content_hash not in persisted(config)

    def test_probe_sends_digests(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """The probe carries content hash, slice hash, size and path."""
        path = write_file(tmp_path / "a.bin", 40)

        make_session(remote, config).upload(path, "/dst")

        content_hash, slice_hash, size, remote_path = remote.calls[0][1]
        assert content_hash == compute_file_hash(path)
        assert slice_hash is not None
        assert size == 40
        assert remote_path == "/dst/a.bin"

    def test_probe_result_types(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """probe() returns NeedsUpload, then Deduped once the content is stored."""
        path = write_file(tmp_path / "a.bin", 40)
        session = make_session(remote, config)

        first = session.probe(path, "/dst/a.bin")
        assert isinstance(first, NeedsUpload)
        assert first.plan.chunk_count == 3

        session.upload(path, "/dst")
        second = session.probe(path, "/dst/a.bin")
        assert isinstance(second, Deduped)

    def test_second_upload_of_same_content_dedups(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """Identical content under another name is deduplicated."""
        data = os.urandom(64)
        (tmp_path / "a.bin").write_bytes(data)
        (tmp_path / "b.bin").write_bytes(data)
        session = make_session(remote, config)

        first = session.upload(tmp_path / "a.bin", "/dst")
        remote.calls.clear()
        second = session.upload(tmp_path / "b.bin", "/dst")

        assert second.id == first.id
        assert remote.operations() == ["probe_existing"]

    def test_probe_failure(self, tmp_path: Path, config: UploadConfig) -> None:
        """A failing probe surfaces as a typed error for the probe phase."""

        class FailingProbe(FakeRemote):
            def probe_existing(self, *args: object) -> RemoteObject | None:
                raise APIError("Forbidden", 403)

        path = write_file(tmp_path / "a.bin", 40)

        with pytest.raises(RemoteProtocolError) as exc_info:
            make_session(FailingProbe(), config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.PROBE


class TestChunkedTransfer:
    """Tests for multi-chunk transfers."""

    def test_chunks_sent_in_order(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """Chunks go out strictly in index order, then finalize."""
        path = write_file(tmp_path / "a.bin", 70)

        result = make_session(remote, config).upload(path, "/dst")

        assert remote.put_indices() == [0, 1, 2, 3, 4]
        assert remote.operations()[-1] == "finalize"
        open_args = remote.calls[1][1]
        assert open_args[3] is True
        assert open_args[4] == 5
        assert result.content_hash == compute_file_hash(path)

    def test_finalize_clears_progress(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """After finalize the store has no entry for the content."""
        path = write_file(tmp_path / "a.bin", 70)

        make_session(remote, config).upload(path, "/dst")

        assert compute_file_hash(path) not in persisted(config)

    def test_progress_callback(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """The callback sees every chunk and ends at 100%."""
        updates: list[TransferProgress] = []
        path = write_file(tmp_path / "a.bin", 40)

        make_session(remote, config, progress_callback=updates.append).upload(path, "/dst")

        assert [u.current_chunk for u in updates] == [1, 2, 3]
        assert [u.bytes_transferred for u in updates] == [16, 32, 40]
        assert updates[-1].percent == 100.0
        assert updates[-1].file_path == "/dst/a.bin"


class TestResume:
    """Tests for resuming interrupted uploads."""

    def test_resume_skips_acknowledged_chunks(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """After a failure at chunk k only chunks k..N-1 are sent again."""
        path = write_file(tmp_path / "a.bin", 80)  # 5 chunks
        remote.fail_on_chunk[2] = TransportError("connection reset")

        with pytest.raises(RemoteTransportError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.PUT_CHUNK
        entry = persisted(config)[compute_file_hash(path)]
        assert entry["chunk_hashes"].keys() == {"0", "1"}
        upload_id = entry["upload_id"]

        remote.calls.clear()
        make_session(remote, config).upload(path, "/dst")

        assert remote.put_indices() == [2, 3, 4]
        assert "open_session" not in remote.operations()
        assert all(args[0] == upload_id for name, args in remote.calls if name == "put_chunk")

    def test_ten_mib_restart_sends_only_last_chunk(
        self, tmp_path: Path, remote: FakeRemote
    ) -> None:
        """10 MiB in 4 MiB chunks: after chunks 0 and 1, a restart sends only chunk 2."""
        config = UploadConfig(progress_path=tmp_path / "progress.json")
        path = write_file(tmp_path / "big.bin", 10 * MiB)
        remote.fail_on_chunk[2] = ConnectionError("network down")

        with pytest.raises(RemoteTransportError):
            make_session(remote, config).upload(path, "/dst")
        assert remote.put_indices() == [0, 1, 2]

        remote.calls.clear()
        result = make_session(remote, config).upload(path, "/dst")

        puts = [args for name, args in remote.calls if name == "put_chunk"]
        assert len(puts) == 1
        assert puts[0][1] == 2
        assert puts[0][2] == 2 * MiB
        assert remote.operations()[-2:] == ["put_chunk", "finalize"]
        assert result.size == 10 * MiB

    def test_missing_ack_leaves_progress(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """An acknowledgment without a digest aborts without recording the chunk."""
        path = write_file(tmp_path / "a.bin", 40)
        remote.ack_override = ""

        with pytest.raises(RemoteProtocolError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.PUT_CHUNK
        assert persisted(config)[compute_file_hash(path)]["chunk_hashes"] == {}

    def test_finalize_without_id_is_terminal(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """A finalize response without id fails; a retry only finalizes."""
        path = write_file(tmp_path / "a.bin", 40)
        remote.finalize_override = RemoteObject(id="", path="", size=0)

        with pytest.raises(RemoteProtocolError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.FINALIZE
        assert compute_file_hash(path) in persisted(config)

        remote.finalize_override = None
        remote.calls.clear()
        make_session(remote, config).upload(path, "/dst")

        assert remote.operations() == ["probe_existing", "finalize"]

    def test_stale_progress_opens_new_session(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """Progress older than the retention window is not resumed."""
        path = write_file(tmp_path / "a.bin", 40)
        remote.fail_on_chunk[1] = TransportError("reset")
        with pytest.raises(RemoteTransportError):
            make_session(remote, config).upload(path, "/dst")

        table = persisted(config)
        for entry in table.values():
            entry["last_touched"] -= config.retention_seconds + 1
        config.progress_path.write_text(json.dumps(table), encoding="utf-8")

        remote.calls.clear()
        make_session(remote, config).upload(path, "/dst")

        assert "open_session" in remote.operations()
        assert remote.put_indices() == [0, 1, 2]


class TestPhaseErrors:
    """Tests for error mapping per phase."""

    def test_open_session_api_error(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """HTTP errors while opening map to RemoteProtocolError."""
        remote.open_error = APIError("Quota exceeded", 507)
        path = write_file(tmp_path / "a.bin", 10)

        with pytest.raises(RemoteProtocolError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.OPEN_SESSION
        assert isinstance(exc_info.value.__cause__, APIError)

    def test_open_session_timeout(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """Timeouts while opening map to RemoteTransportError."""
        remote.open_error = TimeoutError("timed out")
        path = write_file(tmp_path / "a.bin", 10)

        with pytest.raises(RemoteTransportError) as exc_info:
            make_session(remote, config).upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.OPEN_SESSION


    def test_other_destination_replaces_record_mid_transfer(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """A finished upload of the same content elsewhere stops this one with a typed error."""
        data = os.urandom(48)
        path_a = tmp_path / "a.bin"
        path_a.write_bytes(data)
        path_b = tmp_path / "b.bin"
        path_b.write_bytes(data)
        other = make_session(remote, config)

        def upload_elsewhere(update: TransferProgress) -> None:
            if update.current_chunk == 1:
                other.upload(path_b, "/other")

        session = make_session(remote, config, progress_callback=upload_elsewhere)

        with pytest.raises(ProgressConflictError) as exc_info:
            session.upload(path_a, "/dst")

        assert exc_info.value.phase == UploadPhase.PUT_CHUNK
        assert exc_info.value.local_path == path_a
        assert compute_file_hash(path_a) not in persisted(config)

    def test_replaced_record_keeps_other_sessions_chunks(
        self, tmp_path: Path, remote: FakeRemote, config: UploadConfig
    ) -> None:
        """Chunks of a replaced session are never written into the new record."""
        data = os.urandom(48)
        path_a = tmp_path / "a.bin"
        path_a.write_bytes(data)
        path_b = tmp_path / "b.bin"
        path_b.write_bytes(data)
        other = make_session(remote, config)

        def interrupted_upload_elsewhere(update: TransferProgress) -> None:
            if update.current_chunk == 1:
                remote.fail_on_chunk[1] = TransportError("connection reset")
                with pytest.raises(RemoteTransportError):
                    other.upload(path_b, "/other")

        session = make_session(remote, config, progress_callback=interrupted_upload_elsewhere)

        with pytest.raises(ProgressConflictError):
            session.upload(path_a, "/dst")

        entry = persisted(config)[compute_file_hash(path_a)]
        assert entry["destination_path"] == "/other/b.bin"
        assert entry["upload_id"] == "up-2"
        assert list(entry["chunk_hashes"]) == ["0"]


class TestFromConfig:
    """Tests for the HTTP-backed session."""

    def test_uploads_over_http(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A whole-shot upload runs open, put and commit against the server."""
        httpx_mock.add_response(
            method="POST", url="https://upload.test/api/uploads", json={"upload_id": "u1"}
        )
        httpx_mock.add_response(
            method="PUT", url="https://upload.test/api/uploads/u1/chunks/0", json={"hash": "h0"}
        )
        httpx_mock.add_response(
            method="POST",
            url="https://upload.test/api/uploads/u1/commit",
            json={"id": 5, "path": "/dst/a.txt", "size": 11},
        )
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello world")
        config = UploadConfig(progress_path=tmp_path / "progress.json")

        with TransferSession.from_config(
            ServerConfig(server_url="https://upload.test/", token="tok"), config
        ) as session:
            result = session.upload(path, "/dst")

        assert result.id == "5"
        assert json.loads(config.progress_path.read_text(encoding="utf-8")) == {}

    def test_undecodable_response_is_typed(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A corrupt compressed response surfaces as RemoteProtocolError."""
        httpx_mock.add_response(
            method="POST",
            url="https://upload.test/api/uploads",
            headers={"Content-Encoding": "gzip"},
            content=b"definitely not gzip",
        )
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello world")
        config = UploadConfig(progress_path=tmp_path / "progress.json")

        with TransferSession.from_config(
            ServerConfig(server_url="https://upload.test/", token="tok"), config
        ) as session:
            with pytest.raises(RemoteProtocolError) as exc_info:
                session.upload(path, "/dst")

        assert exc_info.value.phase == UploadPhase.OPEN_SESSION

    def test_store_failure_creates_no_client(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """If the progress store cannot be opened no HTTP client is left open."""
        clients: list[object] = []

        def broken_store(*args: object) -> ProgressStore:
            raise PermissionError("read-only")

        def tracking_client(server: ServerConfig) -> object:
            clients.append(server)
            return object()

        monkeypatch.setattr(session_module, "ProgressStore", broken_store)
        monkeypatch.setattr(session_module, "HTTPTransferClient", tracking_client)

        with pytest.raises(PermissionError):
            TransferSession.from_config(
                ServerConfig(server_url="https://upload.test", token="tok"),
                UploadConfig(progress_path=tmp_path / "progress.json"),
            )

        assert clients == []
