from sundaykit.config import Settings, get_settings, reset_settings_cache


def test_env_names_map_to_fields(monkeypatch):
    monkeypatch.setenv("PROVISION_POLL_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("TRAINING_MIN_TOTAL_SAMPLES", "25")
    monkeypatch.setenv("AUTO_BOOTSTRAP_DATABASE", "false")
    settings = Settings.from_env()

    assert settings.provision_poll_interval_seconds == 5
    assert settings.training_min_total_samples == 25
    assert settings.auto_bootstrap_database is False


def test_defaults():
    settings = Settings.from_env()
    assert settings.provision_time_budget_seconds == 15 * 60
    assert settings.training_time_budget_seconds == 30 * 60
    assert settings.api_key_mint_attempts == 5
    assert settings.workspace_password_prefix == "7On"
    assert settings.training_min_primary_samples == 5


def test_cors_origins_split(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com,")
    assert Settings.from_env().cors_allow_origins == [
        "https://a.example.com",
        "https://b.example.com",
    ]


def test_blank_values_are_unset(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "  ")
    monkeypatch.setenv("INTERNAL_API_TOKEN", "")
    settings = Settings.from_env()
    assert settings.redis_url is None
    assert settings.internal_api_token is None


def test_missing_template_settings(monkeypatch):
    assert Settings.from_env().missing_template_settings() == []

    monkeypatch.delenv("NORTHFLANK_API_TOKEN")
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_ID")
    assert Settings.from_env().missing_template_settings() == [
        "NORTHFLANK_API_TOKEN",
        "GOOGLE_OAUTH_CLIENT_ID",
    ]


def test_generated_secret_key_is_persisted(monkeypatch, tmp_path):
    monkeypatch.delenv("SECRET_KEY")
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings.from_env().secret_key
    second = Settings.from_env().secret_key

    assert first == second
    assert len(first) >= 32
    assert (tmp_path / ".secret_key").read_text() == first


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    monkeypatch.setenv("TRAINING_JOB_NAME", "other-job")
    assert get_settings() is cached
    reset_settings_cache()
    assert get_settings().training_job_name == "other-job"
    reset_settings_cache()
