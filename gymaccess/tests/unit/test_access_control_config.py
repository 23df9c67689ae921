"""
Unit tests for access control configuration loading.
"""

import pytest
from pydantic import ValidationError

from gymaccess.config.access_control import (
    AccessControlConfig,
    EndDatePolicy,
    GracePeriodPolicy,
    get_access_control_config,
    load_access_control_config,
    reset_access_control_config,
    _ENV_VARS,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var in list(_ENV_VARS) + ["ACCESS_CONTROL_CONFIG_PATH"]:
        monkeypatch.delenv(env_var, raising=False)
    reset_access_control_config()
    yield
    reset_access_control_config()


class TestDefaults:

    def test_default_values(self):
        config = load_access_control_config()

        assert config.facility_lat == 51.4881
        assert config.facility_lng == -0.0300
        assert config.max_distance_meters == 100.0
        assert config.grace_period_policy == GracePeriodPolicy.PERIOD_END
        assert config.qr_token_ttl_seconds == 300
        assert config.end_date_policy == EndDatePolicy.FIXED_DAYS
        assert config.rate_limit_requests == 10
        assert config.rate_limit_window_seconds == 60


class TestYamlConfig:

    def test_camel_case_keys(self, make_yaml_config):
        path = make_yaml_config("access.yaml", {
            "facilityLat": 40.7128,
            "facilityLng": -74.0060,
            "maxDistanceMeters": 250,
            "gracePeriodPolicy": "immediate",
            "qrTokenTTL": 120,
        })

        config = load_access_control_config(str(path))

        assert config.facility_lat == 40.7128
        assert config.facility_lng == -74.0060
        assert config.max_distance_meters == 250
        assert config.grace_period_policy == GracePeriodPolicy.IMMEDIATE
        assert config.qr_token_ttl_seconds == 120

    def test_nested_section_and_snake_case(self, make_yaml_config):
        path = make_yaml_config("access.yaml", {
            "access_control": {"max_distance_meters": 75, "end_date_policy": "MONTHLY_ANCHOR"}
        })

        config = load_access_control_config(str(path))

        assert config.max_distance_meters == 75
        assert config.end_date_policy == EndDatePolicy.MONTHLY_ANCHOR

    def test_path_from_environment(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("access.yaml", {"qrTokenTTL": 60})
        monkeypatch.setenv("ACCESS_CONTROL_CONFIG_PATH", str(path))

        assert load_access_control_config().qr_token_ttl_seconds == 60

    def test_environment_overrides_yaml(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("access.yaml", {"maxDistanceMeters": 250})
        monkeypatch.setenv("MAX_DISTANCE_METERS", "50")

        assert load_access_control_config(str(path)).max_distance_meters == 50

    def test_non_mapping_rejected(self, temp_config_dir):
        path = temp_config_dir / "bad.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="must be a mapping"):
            load_access_control_config(str(path))


class TestValidation:

    def test_unknown_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("GRACE_PERIOD_POLICY", "whenever")

        with pytest.raises(ValidationError):
            load_access_control_config()

    def test_radius_must_be_positive(self):
        with pytest.raises(ValidationError):
            AccessControlConfig(max_distance_meters=0)

    def test_latitude_range(self):
        with pytest.raises(ValidationError):
            AccessControlConfig(facility_lat=95)


class TestSingleton:

    def test_loaded_once_until_reset(self, monkeypatch):
        monkeypatch.setenv("QR_TOKEN_TTL_SECONDS", "90")
        first = get_access_control_config()

        monkeypatch.setenv("QR_TOKEN_TTL_SECONDS", "45")
        assert get_access_control_config() is first

        reset_access_control_config()
        assert get_access_control_config().qr_token_ttl_seconds == 45
