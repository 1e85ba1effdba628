from p2pdrop.config import Settings


def test_defaults():
    settings = Settings()
    assert settings.port == 8081
    assert settings.max_members == 2
    assert settings.keepalive_interval == 25.0
    assert settings.turn_credentials_url is None


def test_from_env_reads_prefixed_variables():
    settings = Settings.from_env({
        "P2PDROP_PORT": "9000",
        "P2PDROP_MAX_MEMBERS": "3",
        "P2PDROP_TURN_CREDENTIALS_URL": "https://turn.example.com/creds",
        "P2PDROP_LOG_LEVEL": "",
        "PORT": "1",
    })
    assert settings.port == 9000
    assert settings.max_members == 3
    assert settings.turn_credentials_url == "https://turn.example.com/creds"
    assert settings.log_level == "INFO"
