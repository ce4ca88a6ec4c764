from __future__ import annotations

from config import DEFAULTS, get_config, load_config, set_config

SETTINGS = """\
settings:
  quota_limit: 5000
  max_comments_per_video: 20
  database_url: file:from-yaml.db
"""


def test_yaml_beats_environment(tmp_path, monkeypatch) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS)
    monkeypatch.setenv("YOUTUBE_QUOTA_LIMIT", "7000")
    monkeypatch.setenv("TURSO_DATABASE_URL", "libsql://from-env")

    cfg = load_config(str(path))

    assert cfg.quota_limit == 5000
    assert cfg.max_comments_per_video == 20
    assert cfg.database_url == "file:from-yaml.db"
    assert cfg._config_file == str(path)


def test_environment_beats_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("API_MAX_RETRIES", "7")
    monkeypatch.setenv("CHANNEL_SYNC_USER_ID", "alice")

    cfg = load_config()

    assert cfg.api_max_retries == 7
    assert cfg.user_id == "alice"
    assert cfg.quota_limit == DEFAULTS["quota_limit"]
    assert cfg._config_file is None


def test_unparseable_environment_value_falls_back(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("VIDEO_PAGE_SIZE", "lots")

    assert load_config().video_page_size == DEFAULTS["video_page_size"]


def test_secrets_only_come_from_environment(tmp_path, monkeypatch) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("settings:\n  youtube_api_key: leaked\n")
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)

    assert load_config(str(path)).youtube_api_key == ""

    monkeypatch.setenv("YOUTUBE_API_KEY", "secret")
    assert load_config(str(path)).youtube_api_key == "secret"


def test_settings_file_found_in_config_dir(tmp_path, monkeypatch) -> None:
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "settings.yaml").write_text(SETTINGS)
    monkeypatch.chdir(tmp_path)

    assert load_config().quota_limit == 5000


def test_get_config_is_cached_until_reload(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    set_config(None)

    first = get_config()
    assert get_config() is first
    assert get_config(reload=True) is not first
