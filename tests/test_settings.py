"""
Settings loading from the project root and environment.
"""
from cpq_engine.config.settings import Settings


def test_defaults(tmp_path, monkeypatch):
    for name in ('CPQ_DATA_DIR', 'CPQ_DEFAULT_TERM_MONTHS', 'CPQ_DEFAULT_TRIGGER', 'CPQ_LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.load(tmp_path)

    assert settings.data_dir == tmp_path / 'data'
    assert settings.compiled_rules == tmp_path / 'data' / 'compiled_rules.json'
    assert settings.default_term_months == 12
    assert settings.default_trigger == 'ON_QUOTE_SAVE'
    assert settings.log_level == 'INFO'


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv('CPQ_DATA_DIR', str(tmp_path / 'exports'))
    monkeypatch.setenv('CPQ_DEFAULT_TERM_MONTHS', '36')
    monkeypatch.setenv('CPQ_DEFAULT_TRIGGER', 'on_finalize')
    monkeypatch.setenv('CPQ_LOG_LEVEL', 'debug')

    settings = Settings.load(tmp_path)

    assert settings.rules_csv == tmp_path / 'exports' / 'rules.csv'
    assert settings.default_term_months == 36
    assert settings.default_trigger == 'ON_FINALIZE'
    assert settings.log_level == 'DEBUG'
