"""Tests for settings defaults and validation."""

from config.settings import Settings


class TestSettings:
    def test_defaults_are_valid(self):
        assert Settings().validate() == []

    def test_defaults(self):
        settings = Settings()
        assert settings.min_history_games == 5
        assert settings.train_fraction == 0.7
        assert settings.underdog_thresholds == (200, 300, 500, 1000)
        assert settings.unit_stake == 10.0

    def test_invalid_values_reported(self):
        settings = Settings(train_fraction=1.5, calibration_method="beta", unit_stake=0)
        errors = settings.validate()
        assert len(errors) == 3

    def test_blend_weights_must_sum_to_one(self):
        assert Settings(ensemble_base_weight=0.5).validate()

    def test_artifact_dir_override(self, tmp_path):
        settings = Settings(artifact_root=str(tmp_path))
        assert settings.artifact_dir == tmp_path
        assert Settings(artifact_root="").artifact_dir.name == "models"
