"""Tests for YAML configuration loading, updates and change notification."""

import pytest
import yaml

from browsedigest.config import Config, ConfigManager, DigestConfig, TrackingConfig, coerce_value


class TestDefaults:

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path / "absent.yaml")
        assert manager.config == Config()

    def test_default_thresholds(self):
        tracking = TrackingConfig()
        assert tracking.min_duration_seconds == 3.0
        assert tracking.max_duration_seconds == 1800.0
        assert tracking.content_min_seconds == 30.0
        assert tracking.content_max_seconds == 1800.0

    def test_default_digest(self):
        digest = DigestConfig()
        assert digest.time == "20:00"
        assert digest.top_sites == 15
        assert digest.comeback_minutes == 30


class TestLoading:

    def test_partial_file_merges_with_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            'digest': {'time': '07:30'},
            'webhook': {'url': 'https://agent.example/hook', 'token': 't', 'enabled': True},
        }))
        config = ConfigManager(path).config
        assert config.digest.time == '07:30'
        assert config.digest.top_sites == 15
        assert config.webhook.url == 'https://agent.example/hook'
        assert config.webhook.session_key == 'browsedigest'
        assert config.storage.retention_days == 90

    def test_unknown_fields_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({'digest': {'time': '08:00', 'colour': 'blue'}, 'extra': {}}))
        config = ConfigManager(path).config
        assert config.digest.time == '08:00'
        assert not hasattr(config.digest, 'colour')

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("digest: [unclosed")
        assert ConfigManager(path).config == Config()


class TestUpdate:

    def test_update_saves_and_notifies(self, config_manager):
        seen = []
        config_manager.subscribe(lambda cfg: seen.append(cfg.digest.time))

        assert config_manager.update('digest', 'time', '21:15') is True
        assert seen == ['21:15']

        saved = yaml.safe_load(config_manager.path.read_text())
        assert saved['digest']['time'] == '21:15'

    def test_unchanged_value_does_not_notify(self, config_manager):
        seen = []
        config_manager.subscribe(seen.append)
        assert config_manager.update('digest', 'time', '20:00') is False
        assert seen == []

    def test_invalid_section_or_key(self, config_manager):
        assert config_manager.update('nope', 'time', '1') is False
        assert config_manager.update('digest', 'nope', '1') is False

    def test_subscriber_error_does_not_block_others(self, config_manager):
        seen = []

        def broken(cfg):
            raise RuntimeError("boom")

        config_manager.subscribe(broken)
        config_manager.subscribe(lambda cfg: seen.append(cfg.web.port))
        config_manager.update('web', 'port', 6000)
        assert seen == [6000]

    def test_reload_picks_up_file_changes(self, config_manager):
        seen = []
        config_manager.subscribe(lambda cfg: seen.append(cfg.digest.time))
        config_manager.path.write_text(yaml.dump({'digest': {'time': '06:45'}}))

        config_manager.reload()

        assert config_manager.config.digest.time == '06:45'
        assert seen == ['06:45']

    def test_create_default_file(self, config_manager):
        config_manager.create_default_file()
        saved = yaml.safe_load(config_manager.path.read_text())
        assert saved['digest']['time'] == '20:00'
        assert saved['privacy']['track_incognito'] is False


class TestCoercion:

    def test_strings_converted_to_field_type(self, config_manager):
        assert config_manager.update('storage', 'retention_days', '30') is True
        assert config_manager.config.storage.retention_days == 30
        assert config_manager.update('webhook', 'enabled', 'true') is True
        assert config_manager.config.webhook.enabled is True
        assert config_manager.update('tracking', 'content_wait_seconds', 2) is True
        assert config_manager.config.tracking.content_wait_seconds == 2.0

    def test_bad_value_rejected_without_notifying(self, config_manager):
        seen = []
        config_manager.subscribe(seen.append)

        assert config_manager.update('storage', 'retention_days', 'thirty') is False
        assert config_manager.update('storage', 'retention_days', 7.5) is False
        assert config_manager.update('privacy', 'enabled', 'maybe') is False
        assert config_manager.update('digest', 'time', 2130) is False

        assert config_manager.config.storage.retention_days == 90
        assert config_manager.config.privacy.enabled is True
        assert seen == []

    def test_coerce_names_the_problem(self, config_manager):
        with pytest.raises(ValueError, match="storage.retention_days"):
            config_manager.coerce('storage', 'retention_days', 'x')
        with pytest.raises(ValueError, match="Invalid config section"):
            config_manager.coerce('nope', 'x', 1)

    def test_blocklist_accepts_comma_separated_string(self, config_manager):
        config_manager.update('privacy', 'domain_blocklist', 'bank, example.org')
        assert config_manager.config.privacy.domain_blocklist == ['bank', 'example.org']

    @pytest.mark.parametrize("field_type, value", [
        (int, True),
        (int, float('nan')),
        (float, 'inf'),
        (bool, 1),
        (str, None),
    ])
    def test_coerce_value_rejects(self, field_type, value):
        with pytest.raises(ValueError):
            coerce_value(field_type, value)

    def test_wrong_type_in_file_uses_default(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            'storage': {'retention_days': 'lots', 'persist_every': '10'},
            'digest': {'time': '07:30'},
        }))
        config = ConfigManager(path).config
        assert config.storage.retention_days == 90
        assert config.storage.persist_every == 10
        assert config.digest.time == '07:30'

    def test_tokens_masked_on_request(self, config_manager):
        config_manager.update('webhook', 'token', 'hunter2')
        assert config_manager.to_dict()['webhook']['token'] == 'hunter2'
        masked = config_manager.to_dict(mask_secrets=True)
        assert masked['webhook']['token'] == '***configured***'
        assert masked['logger']['token'] == ''

    def test_token_update_not_logged(self, config_manager, caplog):
        with caplog.at_level('INFO', logger='browsedigest.config'):
            config_manager.update('webhook', 'token', 'hunter2')
        assert 'Updated webhook.token' in caplog.text
        assert 'hunter2' not in caplog.text
