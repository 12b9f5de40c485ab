import asyncio
import logging
import time

import pytest

from conftest import body, offer
from lanshare.transfer.errors import MalformedRequest, StorageError, Unauthorized
from lanshare.transfer.manager import SessionManager, sanitize_file_name
from lanshare.transfer.models import FileState, PrepareUploadRequest


def request_for(*files) -> PrepareUploadRequest:
    return PrepareUploadRequest.model_validate(offer(*files))


async def test_prepare_upload_issues_one_distinct_token_per_file(manager):
    response = await manager.prepare_upload(
        request_for(("a", "a.txt", 1), ("b", "b.txt", 2), ("c", "c.txt", 3))
    )

    assert set(response.files) == {"a", "b", "c"}
    assert len(set(response.files.values())) == 3

    session = await manager.get_session(response.session_id)
    assert session.tokens == response.files
    assert set(session.files) == set(session.tokens)
    assert all(s == FileState.PENDING for s in session.file_states.values())


async def test_prepare_upload_sessions_are_unique(manager):
    first = await manager.prepare_upload(request_for(("a", "a.txt", 1)))
    second = await manager.prepare_upload(request_for(("a", "a.txt", 1)))

    assert first.session_id != second.session_id
    assert first.files["a"] != second.files["a"]
    assert manager.session_count == 2


async def test_prepare_upload_rejects_empty_offer(manager):
    with pytest.raises(MalformedRequest):
        await manager.prepare_upload(request_for())


async def test_upload_writes_file(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "report.txt", 1024)))

    result = await manager.upload(
        prepared.session_id, "F1", prepared.files["F1"], body(b"x" * 512, b"y" * 512)
    )

    assert result.path == tmp_path / "report.txt"
    assert result.bytes_written == 1024
    assert (tmp_path / "report.txt").read_bytes() == b"x" * 512 + b"y" * 512

    session = await manager.get_session(prepared.session_id)
    assert session.file_states["F1"] == FileState.COMPLETED


@pytest.mark.parametrize("missing", ["session_id", "file_id", "token"])
async def test_upload_requires_all_parameters(manager, missing):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))
    args = {"session_id": prepared.session_id, "file_id": "F1", "token": prepared.files["F1"]}
    args[missing] = ""

    with pytest.raises(MalformedRequest):
        await manager.upload(stream=body(b"a"), **args)


async def test_upload_unknown_session_is_unauthorized(manager):
    with pytest.raises(Unauthorized):
        await manager.upload("nope", "F1", "token", body(b"a"))


async def test_upload_wrong_token_is_unauthorized(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))

    with pytest.raises(Unauthorized):
        await manager.upload(prepared.session_id, "F1", "WRONG", body(b"a"))
    assert not (tmp_path / "a.txt").exists()


async def test_token_is_scoped_to_its_file(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1), ("F2", "b.txt", 1)))

    with pytest.raises(Unauthorized):
        await manager.upload(prepared.session_id, "F2", prepared.files["F1"], body(b"a"))
    with pytest.raises(Unauthorized):
        await manager.upload(prepared.session_id, "F3", prepared.files["F1"], body(b"a"))


async def test_token_is_scoped_to_its_session(manager):
    first = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))
    second = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))

    with pytest.raises(Unauthorized):
        await manager.upload(second.session_id, "F1", first.files["F1"], body(b"a"))


async def test_unauthorized_message_does_not_say_which_part_failed(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))

    with pytest.raises(Unauthorized) as bad_session:
        await manager.upload("nope", "F1", prepared.files["F1"], body(b"a"))
    with pytest.raises(Unauthorized) as bad_token:
        await manager.upload(prepared.session_id, "F1", "WRONG", body(b"a"))

    assert bad_session.value.detail == bad_token.value.detail


async def test_token_cannot_be_reused_after_upload(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))
    await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"a"))

    with pytest.raises(Unauthorized):
        await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"a"))


async def test_other_files_stay_pending(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1), ("F2", "b.txt", 1)))
    await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"a"))

    session = await manager.get_session(prepared.session_id)
    assert session.file_states == {"F1": FileState.COMPLETED, "F2": FileState.PENDING}

    await manager.upload(prepared.session_id, "F2", prepared.files["F2"], body(b"b"))


async def test_path_traversal_is_stripped(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "../../etc/passwd", 4)))

    result = await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"root"))

    assert result.path == tmp_path / "passwd"
    assert (tmp_path / "passwd").read_bytes() == b"root"


async def test_windows_separators_are_stripped(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "..\\..\\evil.txt", 1)))

    result = await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"a"))

    assert result.path == tmp_path / "evil.txt"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("report.txt", "report.txt"),
        ("a/b/c.bin", "c.bin"),
        ("/abs/path.txt", "path.txt"),
        ("..", ""),
        ("../", ""),
        ("", ""),
    ],
)
def test_sanitize_file_name(name, expected):
    assert sanitize_file_name(name) == expected


async def test_unusable_name_falls_back_to_file_id(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "..", 1)))

    result = await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"a"))

    assert result.path == tmp_path / "F1"


async def test_existing_file_is_not_overwritten(manager, tmp_path):
    (tmp_path / "report.txt").write_bytes(b"old")
    prepared = await manager.prepare_upload(request_for(("F1", "report.txt", 3)))

    result = await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"new"))

    assert result.path == tmp_path / "report (1).txt"
    assert (tmp_path / "report.txt").read_bytes() == b"old"


async def test_size_mismatch_is_a_warning(manager, tmp_path, caplog):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 10)))

    with caplog.at_level(logging.WARNING, logger="lanshare.transfer.manager"):
        result = await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"abc"))

    assert result.bytes_written == 3
    assert result.declared_size == 10
    assert "Size mismatch" in caplog.text


async def test_cancel_is_idempotent(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))

    await manager.cancel(prepared.session_id)
    await manager.cancel(prepared.session_id)
    await manager.cancel("never-existed")
    await manager.cancel(None)

    assert await manager.get_session(prepared.session_id) is None


async def test_upload_after_cancel_is_unauthorized(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))
    await manager.cancel(prepared.session_id)

    with pytest.raises(Unauthorized):
        await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"a"))


async def test_cancel_during_upload_rejects_it(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 6)))
    started = asyncio.Event()
    proceed = asyncio.Event()

    async def slow_body():
        yield b"abc"
        started.set()
        await proceed.wait()
        yield b"def"

    task = asyncio.create_task(
        manager.upload(prepared.session_id, "F1", prepared.files["F1"], slow_body())
    )
    await started.wait()
    await manager.cancel(prepared.session_id)
    proceed.set()

    with pytest.raises(Unauthorized):
        await task
    assert not (tmp_path / "a.txt").exists()


async def test_second_upload_of_same_file_is_unauthorized(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 6)))
    token = prepared.files["F1"]
    started = asyncio.Event()
    proceed = asyncio.Event()

    async def slow_body():
        yield b"abc"
        started.set()
        await proceed.wait()
        yield b"def"

    task = asyncio.create_task(manager.upload(prepared.session_id, "F1", token, slow_body()))
    await started.wait()

    with pytest.raises(Unauthorized):
        await manager.upload(prepared.session_id, "F1", token, body(b"zzzzzz"))

    proceed.set()
    result = await task
    assert result.bytes_written == 6
    assert (tmp_path / "a.txt").read_bytes() == b"abcdef"
    assert not (tmp_path / "a (1).txt").exists()
    session = await manager.get_session(prepared.session_id)
    assert session.file_states["F1"] == FileState.COMPLETED


async def test_failed_stream_releases_the_file(manager, tmp_path):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 2)))

    async def broken_body():
        yield b"a"
        raise ConnectionResetError("peer went away")

    with pytest.raises(StorageError):
        await manager.upload(prepared.session_id, "F1", prepared.files["F1"], broken_body())

    assert not (tmp_path / "a.txt").exists()
    session = await manager.get_session(prepared.session_id)
    assert session.file_states["F1"] == FileState.PENDING

    await manager.upload(prepared.session_id, "F1", prepared.files["F1"], body(b"ab"))
    assert (tmp_path / "a.txt").read_bytes() == b"ab"


async def test_upload_timeout(identity, tmp_path):
    manager = SessionManager(identity, download_dir=str(tmp_path), upload_timeout=0.05)
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 2)))

    async def stalled_body():
        yield b"a"
        await asyncio.sleep(5)
        yield b"b"

    with pytest.raises(StorageError):
        await manager.upload(prepared.session_id, "F1", prepared.files["F1"], stalled_body())

    session = await manager.get_session(prepared.session_id)
    assert session.file_states["F1"] == FileState.PENDING


async def test_concurrent_prepare_uploads(manager):
    responses = await asyncio.gather(
        *(manager.prepare_upload(request_for(("F1", f"{i}.txt", 1))) for i in range(20))
    )

    assert len({r.session_id for r in responses}) == 20
    assert manager.session_count == 20


async def test_sessions_never_expire_without_ttl(manager):
    prepared = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))

    assert await manager.expire_sessions(now=time.time() + 10**6) == []
    assert await manager.get_session(prepared.session_id) is not None


async def test_expired_sessions_are_dropped(identity, tmp_path):
    manager = SessionManager(identity, download_dir=str(tmp_path), session_ttl=10)
    old = await manager.prepare_upload(request_for(("F1", "a.txt", 1)))
    busy = await manager.prepare_upload(request_for(("F1", "b.txt", 1)))
    manager._sessions[busy.session_id].file_states["F1"] = FileState.RECEIVING

    expired = await manager.expire_sessions(now=time.time() + 60)

    assert expired == [old.session_id]
    assert await manager.get_session(busy.session_id) is not None
    with pytest.raises(Unauthorized):
        await manager.upload(old.session_id, "F1", old.files["F1"], body(b"a"))


async def test_register_notifies_callbacks(manager, identity):
    seen = []

    async def on_register(peer, address):
        seen.append((peer.alias, address))

    manager.on_register(on_register)
    request = request_for(("F1", "a.txt", 1))

    info = await manager.register(request.info, "10.0.0.2")

    assert seen == [("Remote Owl", "10.0.0.2")]
    assert info.fingerprint == identity.fingerprint
