from __future__ import annotations

import pytest
from docker_fakes import FakeDockerEngine

from sessiondock.docker.cli import DockerCli, DockerContextHandle
from sessiondock.docker.volumes import DataSyncEngine, parse_itemized_changes
from sessiondock.errors import SessionDockError
from sessiondock.progress import ProgressLog
from sessiondock.runtime.transport import LocalTransport


def _engine(fake: FakeDockerEngine, progress: ProgressLog | None = None) -> DataSyncEngine:
    docker = DockerCli(DockerContextHandle(name="ctx", endpoint="unix:///x"), local=LocalTransport(runner=fake))
    return DataSyncEngine(
        docker,
        uid=1000,
        gid=1000,
        utility_image="alpine:3.20",
        sync_image="eeacms/rsync:latest",
        progress=progress,
    )


def test_parse_itemized_changes_counts_only_file_writes() -> None:
    output = "\n".join(
        [
            ".d..t...... ./",
            "cd+++++++++ plots/",
            ">f+++++++++ plots/fig1.png",
            ">f.st...... summary.csv",
            ".f....og... unchanged.csv",
            "",
        ]
    )
    assert parse_itemized_changes(output) == ["plots/fig1.png", "summary.csv"]


def test_populate_creates_chowns_and_copies() -> None:
    fake = FakeDockerEngine()
    fake.host_dirs["/data/in"] = {"a.txt": "A"}

    _engine(fake).populate("vol_in", "/data/in")

    runs = fake.docker_calls("run")
    assert fake.docker_calls("volume")[0][-2:] == ["create", "vol_in"]
    assert runs[0][-3:] == ["chown", "1000:1000", "/volume"]
    assert "/data/in:/source:ro" in runs[1]
    assert runs[1][-1] == "cp -a /source/. /volume/ && chown -R 1000:1000 /volume"
    assert fake.volumes["vol_in"] == {"a.txt": "A"}


def test_second_sync_back_writes_nothing() -> None:
    fake = FakeDockerEngine()
    fake.volumes["vol_out"] = {"result.csv": "42", "log.txt": "ok"}
    engine = _engine(fake)

    first = engine.sync_back("vol_out", "/work/out")
    second = engine.sync_back("vol_out", "/work/out")

    assert first.files_written == 2
    assert second.files_written == 0
    assert fake.host_dirs["/work/out"] == {"result.csv": "42", "log.txt": "ok"}

    rsync_args = fake.docker_calls("run")[-1][-8:]
    assert rsync_args == [
        "-rc",
        "--no-owner",
        "--no-group",
        "--no-perms",
        "--omit-dir-times",
        "--itemize-changes",
        "/volume/",
        "/dest/",
    ]
    assert not {"-a", "-t", "--times", "--archive"} & set(rsync_args)


def test_attribute_only_itemized_lines_count_as_no_writes() -> None:
    output = ".f...p..... result.csv\n.f....og... log.txt\n.d..t...... ./\n"

    assert parse_itemized_changes(output) == []


def test_sync_back_uses_checksum_rsync_without_ownership() -> None:
    fake = FakeDockerEngine()
    fake.volumes["vol_out"] = {}

    _engine(fake).sync_back("vol_out", "/work/out")

    command = fake.docker_calls("run")[0]
    assert command[command.index("--entrypoint") + 1] == "rsync"
    assert "vol_out:/volume:ro" in command
    assert "-rc" in command
    assert "--no-owner" in command and "--no-group" in command
    assert command[-2:] == ["/volume/", "/dest/"]


def test_sync_failure_is_raised_and_recorded() -> None:
    fake = FakeDockerEngine()
    fake.volumes["vol_out"] = {}
    fake.sync_fails = True
    progress = ProgressLog()

    with pytest.raises(SessionDockError) as exc_info:
        _engine(fake, progress).sync_back("vol_out", "/work/out")

    assert "No space left" in exc_info.value.hint
    assert progress.states_for("volume-sync:vol_out") == ["started", "error"]


def test_remove_missing_volume_reports_false() -> None:
    progress = ProgressLog()
    assert _engine(FakeDockerEngine(), progress).remove_volume("ghost") is False
    assert progress.states_for("volume-rm:ghost") == ["warning"]
