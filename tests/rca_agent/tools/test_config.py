import json

import pytest

from rca_agent.tools.config import FusionStrategyName, RcaConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "RCA_CONFIG_PATH",
        "RCA_FUSION_STRATEGY",
        "RCA_DECAY",
        "RCA_REASONING_BACKEND",
        "RCA_TOP_K",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = load_config()
    assert config.retrieval.timeout_seconds == 10.0
    assert config.retrieval.cache_ttl_seconds == 300.0
    assert config.signals.error_decay_per_hop == 0.7
    assert config.signals.zscore_saturation_scale == 3.0
    assert config.fusion.strategy is FusionStrategyName.WEIGHTED_SUM
    assert config.harness.top_k == 3
    assert config.harness.noise_levels == [0.0, 0.1, 0.2, 0.3, 0.4, 0.5]


def test_json_file_overrides(tmp_path):
    path = tmp_path / "rca.json"
    path.write_text(
        json.dumps(
            {
                "fusion": {"strategy": "graph_aware", "weights": {"error_propagation": 2}},
                "harness": {"top_k": 5},
            }
        )
    )
    config = load_config(path)
    assert config.fusion.strategy is FusionStrategyName.GRAPH_AWARE
    assert config.fusion.weights == {"error_propagation": 2}
    assert config.harness.top_k == 5


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "rca.json"
    path.write_text(json.dumps({"fusion": {"strategy": "graph_aware"}}))
    monkeypatch.setenv("RCA_CONFIG_PATH", str(path))
    monkeypatch.setenv("RCA_FUSION_STRATEGY", "rule_based")
    monkeypatch.setenv("RCA_DECAY", "0.5")

    config = load_config()
    assert config.fusion.strategy is FusionStrategyName.RULE_BASED
    assert config.signals.error_decay_per_hop == 0.5


def test_missing_file_falls_back_to_defaults(tmp_path):
    config = load_config(tmp_path / "absent.json")
    assert config.harness.top_k == 3


def test_unknown_key_is_rejected(tmp_path):
    path = tmp_path / "rca.json"
    path.write_text(json.dumps({"signals": {"decay": 0.5}}))
    with pytest.raises(ValueError, match="Unknown config key"):
        load_config(path)


@pytest.mark.parametrize(
    "env, value",
    [
        ("RCA_DECAY", "1.5"),
        ("RCA_DECAY", "not-a-number"),
        ("RCA_FUSION_STRATEGY", "magic"),
        ("RCA_REASONING_BACKEND", "oracle"),
        ("RCA_TOP_K", "0"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, env, value):
    monkeypatch.setenv(env, value)
    with pytest.raises(ValueError):
        load_config()


def test_to_dict_is_json_serializable():
    data = RcaConfig().to_dict()
    assert json.loads(json.dumps(data))["fusion"]["strategy"] == "weighted_sum"


def test_symptom_weight_out_of_range(tmp_path):
    path = tmp_path / "rca.json"
    path.write_text(json.dumps({"signals": {"error_symptom_weight": 1.5}}))
    with pytest.raises(ValueError, match="error_symptom_weight"):
        load_config(path)
