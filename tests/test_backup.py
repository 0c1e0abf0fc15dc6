import threading

from backupctl import backup as backup_mod
from backupctl.backup import BackupWorkflow, collect_paths, run_backup

from .conftest import REPO_BASE, FakeEngine


class WarningEngine(FakeEngine):
    def backup(self, repo_url, path, host, tag):
        super().backup(repo_url, path, host, tag)
        return "error: open /x: permission denied\nsnapshot 9f8e7d6c saved\nWarning: at least one source file could not be read\n"

class SilentEngine(FakeEngine):
    def backup(self, repo_url, path, host, tag):
        super().backup(repo_url, path, host, tag)
        return "nothing useful"


def workflow(engine, tmp_path, url_for, host="pc"):
    return BackupWorkflow(
        engine=engine,
        url_for=url_for,
        host=host,
        home_root=str(tmp_path / "home"),
        docker_volume_root=str(tmp_path / "volumes"),
        max_workers=2,
    )

def test_collect_paths_dedupes_and_adds_volumes(tmp_path):
    volumes = tmp_path / "volumes"
    (volumes / "db").mkdir(parents=True)
    (volumes / "backingFsBlockDev").mkdir()
    paths = collect_paths(["/etc/", "/home/tim", ""], ["/etc", "/srv"], str(volumes))
    assert paths == ["/etc", "/home/tim", "/srv", str(volumes / "db")]

def test_backup_categorizes_and_tags(tmp_path, url_for):
    home = tmp_path / "home" / "tim"
    volume = tmp_path / "volumes" / "db"
    other = tmp_path / "srv"
    for p in (home, volume, other):
        p.mkdir(parents=True)

    engine = FakeEngine()
    outcome = workflow(engine, tmp_path, url_for).run([str(home), str(volume), str(other)])

    assert outcome.status == "success"
    assert [p.snapshot_id for p in outcome.paths] == ["1a2b3c4d"] * 3
    tags = {path: tag for _, path, _, tag in engine.backed_up}
    assert tags == {str(home): "user-path", str(volume): "docker-volume", str(other): "system-path"}
    urls = {url for url, _, _, _ in engine.backed_up}
    assert f"{REPO_BASE}/pc/user_home/tim" in urls
    assert f"{REPO_BASE}/pc/docker_volume/db" in urls
    assert len(engine.initialized) == 3

def test_missing_paths_are_skipped(tmp_path, url_for):
    present = tmp_path / "srv"
    present.mkdir()
    outcome = workflow(FakeEngine(), tmp_path, url_for).run([str(tmp_path / "gone"), str(present)])
    assert [p.status for p in outcome.paths] == ["skipped", "succeeded"]
    assert outcome.status == "partial"

def test_failure_continues_with_other_paths(tmp_path, url_for):
    a, b = tmp_path / "a", tmp_path / "b"
    a.mkdir()
    b.mkdir()
    failing_url = url_for(backup_mod.address_for(str(a), "pc", str(tmp_path / "home"), str(tmp_path / "volumes")))
    outcome = workflow(FakeEngine(failing=[failing_url]), tmp_path, url_for).run([str(a), str(b)])
    assert [p.status for p in outcome.paths] == ["failed", "succeeded"]

def test_unreadable_files_mark_warning(tmp_path, url_for):
    (tmp_path / "a").mkdir()
    outcome = workflow(WarningEngine(), tmp_path, url_for).run([str(tmp_path / "a")])
    path = outcome.paths[0]
    assert path.status == "succeeded"
    assert path.warning
    assert path.snapshot_id == "9f8e7d6c"

def test_missing_snapshot_line_is_failure(tmp_path, url_for):
    (tmp_path / "a").mkdir()
    outcome = workflow(SilentEngine(), tmp_path, url_for).run([str(tmp_path / "a")])
    assert outcome.status == "failure"

def test_cancelled_backup_skips(tmp_path, url_for):
    (tmp_path / "a").mkdir()
    cancel = threading.Event()
    cancel.set()
    engine = FakeEngine()
    outcome = workflow(engine, tmp_path, url_for).run([str(tmp_path / "a")], cancel=cancel)
    assert outcome.paths[0].status == "skipped"
    assert engine.backed_up == []

def test_run_backup_from_settings(tmp_path, settings):
    target = tmp_path / "data"
    target.mkdir()
    settings = settings.model_copy(update={"backup_paths": str(target)})
    engine = FakeEngine()
    outcome = run_backup(settings, engine=engine)
    assert outcome.host == "pc"
    assert outcome.count("succeeded") == 1
