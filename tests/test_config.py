import logging

from yieldsentry.config import Config, build_settings


class _Cfg(Config):
    BITQUERY_API_KEY = "bq"
    DAPPRADAR_API_KEY = "dr"
    RELIABILITY_METHOD = "weighted"


def test_unknown_method_warns_and_falls_back(caplog):
    with caplog.at_level(logging.WARNING, logger="yieldsentry.config"):
        assert _Cfg.validate() is False
    assert "Unknown RELIABILITY_METHOD=weighted" in caplog.text

    settings = build_settings(_Cfg())
    assert settings.reliability.aggregation_method == "primary_fallback"


def test_known_method_is_passed_through():
    class _Consensus(_Cfg):
        RELIABILITY_METHOD = "consensus"

    assert _Consensus.validate() is True
    assert build_settings(_Consensus()).reliability.aggregation_method == "consensus"
