import pytest

from backupctl import config as config_mod
from backupctl.config import SAMPLE_ENV, Settings, get_settings, write_sample_env
from backupctl.errors import ConfigError, InvalidRepoBaseError, MissingSettingError
from backupctl.models import Category, RepositoryAddress


def make(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        restic_password="pw",
        restic_repo_base="s3:https://acct.r2.cloudflarestorage.com/bucket/restic/",
        aws_access_key_id="AKIA",
        aws_secret_access_key="secret",
    )
    values.update(overrides)
    return Settings(**values)

def test_repo_base_parsing():
    settings = make()
    assert settings.restic_repo_base == "s3:https://acct.r2.cloudflarestorage.com/bucket/restic"
    assert settings.s3_endpoint() == "https://acct.r2.cloudflarestorage.com"
    assert settings.s3_bucket() == "bucket"
    assert settings.s3_base_path() == "restic"

def test_repo_base_without_base_path():
    settings = make(restic_repo_base="s3:http://minio:9000/bucket")
    assert settings.s3_endpoint() == "http://minio:9000"
    assert settings.s3_base_path() == ""

def test_repo_url():
    settings = make()
    address = RepositoryAddress(host="pc", category=Category.USER_HOME, segment="tim/docs")
    assert settings.repo_url(address) == "s3:https://acct.r2.cloudflarestorage.com/bucket/restic/pc/user_home/tim/docs"

def test_non_s3_base_uses_endpoint_fallback():
    settings = make(restic_repo_base="rest:https://backup.example.com", aws_s3_endpoint="https://s3.example.com")
    assert settings.s3_endpoint() == "https://s3.example.com"
    with pytest.raises(InvalidRepoBaseError):
        settings.s3_bucket()

def test_paths_split():
    settings = make(backup_paths=" /home/tim/docs, /etc/nginx ,,")
    assert settings.paths == ["/home/tim/docs", "/etc/nginx"]

def test_worker_bounds():
    with pytest.raises(ValueError):
        make(backup_scan_workers=0)

def test_password_from_keyring(monkeypatch):
    monkeypatch.setattr(config_mod, "get_stored_password", lambda: "from-keyring")
    assert make(restic_password=None).resolve_password() == "from-keyring"

def test_missing_password(monkeypatch):
    monkeypatch.setattr(config_mod, "get_stored_password", lambda: None)
    with pytest.raises(MissingSettingError):
        make(restic_password=None).resolve_password()

def test_get_settings_reports_missing(monkeypatch, tmp_path):
    for var in ("RESTIC_REPO_BASE", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "LOAD_ENV_FILE"):
        monkeypatch.delenv(var, raising=False)
    env = tmp_path / "empty.env"
    env.write_text("")
    with pytest.raises(MissingSettingError) as exc:
        get_settings(str(env))
    assert "RESTIC_REPO_BASE" in str(exc.value)

def test_get_settings_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        get_settings(str(tmp_path / "nope.env"))

def test_get_settings_from_env_file(monkeypatch, tmp_path):
    for var in ("RESTIC_REPO_BASE", "BACKUP_HOSTNAME", "BACKUP_PATHS"):
        monkeypatch.delenv(var, raising=False)
    env = tmp_path / "test.env"
    env.write_text(
        "RESTIC_REPO_BASE=s3:https://h/b/base\n"
        "AWS_ACCESS_KEY_ID=a\nAWS_SECRET_ACCESS_KEY=s\n"
        "BACKUP_HOSTNAME=box\nBACKUP_PATHS=/etc,/home/tim\n"
    )
    settings = get_settings(str(env))
    assert settings.hostname == "box"
    assert settings.paths == ["/etc", "/home/tim"]

def test_write_sample_env_never_overwrites(tmp_path):
    target = tmp_path / ".env"
    assert write_sample_env(target) is True
    assert target.read_text() == SAMPLE_ENV
    target.write_text("mine")
    assert write_sample_env(target) is False
    assert target.read_text() == "mine"
