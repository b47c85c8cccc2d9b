"""Tests for the daemon's signal handling, alarms and restart behavior."""

import threading
from datetime import date, datetime
from unittest.mock import MagicMock, patch

import pytest

from browsedigest.daemon import IDLE_START_KEY, PERSIST_ALARM, SNAPSHOT_ALARM, DigestDaemon, main
from browsedigest.delivery import DeliveryResult
from browsedigest.digest import DIGEST_ALARM
from browsedigest.store import STORE_KEY


def no_content(session):
    return {'text': '', 'meta': {}, 'word_count': 0}


@pytest.fixture
def make_daemon(config_manager, tmp_path, clock):
    created = []

    def factory():
        daemon = DigestDaemon(config_manager, data_dir=tmp_path / "data", extractor=no_content, clock=clock)
        created.append(daemon)
        return daemon

    yield factory
    for daemon in created:
        daemon.close(wait=True)


@pytest.fixture
def daemon(make_daemon):
    d = make_daemon()
    d.start()
    return d


def types(daemon):
    return [e.type for e in daemon.store.all_events()]


class TestSignals:

    def test_navigation_recorded_and_tracked(self, daemon, clock):
        result = daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/?utm_x=1',
                                       'title': 'GitHub', 'tab_id': 3, 'transition': 'typed'})
        assert result['accepted'] is True
        assert result['event']['url'] == 'https://github.com/'
        assert result['event']['data'] == {'transition': 'typed'}

        clock.advance(40)
        daemon.handle_signal({'kind': 'tab.activated', 'url': 'https://example.com/', 'title': 'E'})
        assert daemon.tracker.dwell_for('github.com').total_seconds == 40

    def test_untrackable_page_not_recorded_but_closes_session(self, daemon, clock):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        clock.advance(10)
        result = daemon.handle_signal({'kind': 'navigation', 'url': 'chrome://settings'})

        assert result == {'accepted': True, 'event': None}
        assert types(daemon) == ['navigation']
        assert daemon.tracker.current_session is None
        assert daemon.tracker.dwell_for('github.com').total_seconds == 10

    def test_unknown_kind(self, daemon):
        assert daemon.handle_signal({'kind': 'tab.closed'}) == {'accepted': False, 'reason': 'unknown_signal'}

    def test_incognito_dropped(self, daemon):
        result = daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/', 'incognito': True})
        assert result == {'accepted': False, 'reason': 'incognito'}
        assert daemon.store.all_events() == []

    def test_bookmark_and_download(self, daemon):
        daemon.handle_signal({'kind': 'bookmark.created', 'url': 'https://example.com/x', 'title': 'X'})
        result = daemon.handle_signal({'kind': 'download.completed', 'url': 'https://example.com/r.pdf',
                                       'filename': '/home/me/Downloads/report.pdf',
                                       'mime': 'application/pdf', 'file_size': 1024})

        assert types(daemon) == ['bookmark.created', 'download.completed']
        assert result['event']['data']['filename'] == 'report.pdf'
        assert daemon.store.all_events()[0].payload == {'url': 'https://example.com/x', 'title': 'X'}

    def test_download_from_blocked_site_ignored(self, daemon):
        daemon.handle_signal({'kind': 'download.completed', 'url': 'https://www.paypal.com/statement.pdf',
                              'filename': 'statement.pdf'})
        assert daemon.store.all_events() == []


class TestIdle:

    def test_comeback_after_long_break(self, daemon, clock):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        clock.advance(60)
        daemon.handle_signal({'kind': 'idle.changed', 'state': 'idle'})
        assert daemon.tracker.current_session is None
        assert daemon.tracker.dwell_for('github.com').total_seconds == 60

        clock.advance(45 * 60)
        daemon.handle_signal({'kind': 'idle.changed', 'state': 'active', 'url': 'https://github.com/'})

        assert types(daemon) == ['navigation', 'idle', 'idle', 'user.comeback']
        assert daemon.store.all_events()[-1].payload == {'away_minutes': 45}
        assert daemon.tracker.current_session.domain == 'github.com'

    def test_short_break_is_not_a_comeback(self, daemon, clock):
        daemon.handle_signal({'kind': 'idle.changed', 'state': 'locked'})
        clock.advance(10 * 60)
        daemon.handle_signal({'kind': 'idle.changed', 'state': 'active'})
        assert 'user.comeback' not in types(daemon)

    def test_idle_start_survives_restart(self, daemon, make_daemon, clock):
        daemon.handle_signal({'kind': 'idle.changed', 'state': 'idle'})
        daemon.shutdown()
        assert daemon.storage.get(IDLE_START_KEY) == clock()

        clock.advance(60 * 60)
        restarted = make_daemon()
        restarted.start()
        restarted.handle_signal({'kind': 'idle.changed', 'state': 'active'})

        assert types(restarted)[-1] == 'user.comeback'
        assert restarted.storage.get(IDLE_START_KEY) is None


class TestAlarms:

    def test_start_registers_alarms(self, daemon):
        for name in (PERSIST_ALARM, SNAPSHOT_ALARM, DIGEST_ALARM):
            assert daemon.scheduler.get(name) is not None

    def test_persist_tick_flushes_log(self, daemon, clock):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        assert daemon.storage.get(STORE_KEY) is None

        clock.advance(300)
        fired = daemon.tick()

        assert PERSIST_ALARM in fired and SNAPSHOT_ALARM in fired
        assert len(daemon.storage.get(STORE_KEY)) == 1

    def test_state_survives_restart(self, daemon, make_daemon, clock):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        clock.advance(40)
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/'})
        daemon.shutdown()

        restarted = make_daemon()
        restarted.start()

        assert types(restarted) == ['navigation', 'navigation']
        assert restarted.tracker.dwell_for('github.com').total_seconds == 40

    def test_config_change_reschedules_digest(self, daemon, config_manager):
        config_manager.update('digest', 'time', '06:15')
        assert daemon.scheduler.get(DIGEST_ALARM)['tag'] == '06:15'


class TestDigestAndStatus:

    def test_manual_digest_without_endpoint(self, daemon):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        result = daemon.send_digest_now()
        assert result.reason == 'not_configured'

    def test_status(self, daemon, clock):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        clock.advance(90)
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/'})

        status = daemon.status()

        assert status['store']['event_count'] == 2
        assert status['page_times'][0]['domain'] == 'github.com'
        assert status['page_times'][0]['formatted'] == '2min'
        assert status['current_session']['domain'] == 'example.com'
        assert status['webhook']['configured'] is False
        assert status['digest']['digest_time'] == '20:00'


class TestCli:

    def test_init_config(self, tmp_path):
        path = tmp_path / "cfg.yaml"
        assert main(['--config', str(path), '--init-config']) == 0
        assert path.exists()

    def test_stats_and_export(self, tmp_path, capsys):
        args = ['--config', str(tmp_path / "cfg.yaml"), '--data-dir', str(tmp_path / "data")]
        assert main(args + ['--stats']) == 0
        assert '"event_count": 0' in capsys.readouterr().out

        out_file = tmp_path / "export.json"
        assert main(args + ['--export', str(out_file)]) == 0
        assert '"version": "2.0"' in out_file.read_text()

    def test_send_digest_with_no_events_fails(self, tmp_path, capsys):
        args = ['--config', str(tmp_path / "cfg.yaml"), '--data-dir', str(tmp_path / "data")]
        assert main(args + ['--send-digest', 'Feb 12 2026']) == 1
        assert '"reason": "no_events"' in capsys.readouterr().out


class TestLiveConfig:

    def test_string_setting_reaches_store_as_int(self, daemon, config_manager, clock):
        assert config_manager.update('storage', 'retention_days', '30') is True
        assert daemon.store.config.retention_days == 30

        for i in range(5):
            clock.advance(1)
            result = daemon.handle_signal({'kind': 'navigation', 'url': f'https://example.com/{i}'})
            assert result['accepted'] is True
        assert len(daemon.storage.get(STORE_KEY)) == 5

    def test_bad_setting_never_reaches_store(self, daemon, config_manager):
        assert config_manager.update('storage', 'retention_days', 'thirty') is False
        assert daemon.store.config.retention_days == 90
        assert daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})['accepted']


LONG_TEXT = "Readable paragraph text. " * 20


@pytest.fixture
def live_daemon(config_manager, tmp_path, clock):
    """Daemon using the default extractor fed by pushed page content."""
    config_manager.update('tracking', 'content_wait_seconds', 0.05)
    d = DigestDaemon(config_manager, data_dir=tmp_path / "data", clock=clock)
    d.start()
    yield d
    d.close(wait=True)


class TestPushedContent:

    def test_query_identified_page_captured_from_push(self, live_daemon, clock):
        url = 'https://news.ycombinator.com/item?id=424242'
        live_daemon.handle_signal({'kind': 'navigation', 'url': url, 'title': 'Thread', 'tab_id': 7})
        pushed = live_daemon.handle_content({
            'url': url + '#reply', 'tab_id': 7, 'text': LONG_TEXT, 'meta': {'author': 'pg'},
        })
        assert pushed == {'accepted': True, 'url': 'https://news.ycombinator.com/item'}

        clock.advance(40)
        live_daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/', 'tab_id': 7})
        live_daemon.close(wait=True)

        stored = live_daemon.store.get_page_content(date(2026, 2, 12))
        assert len(stored) == 1
        assert stored[0].content == LONG_TEXT.strip()
        assert stored[0].url == 'https://news.ycombinator.com/item'
        assert stored[0].meta['author'] == 'pg'

    def test_push_for_another_page_is_not_used(self, live_daemon, clock):
        live_daemon.handle_content({'url': 'https://news.ycombinator.com/item?id=1', 'tab_id': 7,
                                    'text': LONG_TEXT})
        live_daemon.handle_signal({'kind': 'navigation', 'url': 'https://news.ycombinator.com/item?id=2',
                                   'tab_id': 7})
        clock.advance(40)
        live_daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/', 'tab_id': 7})
        live_daemon.close(wait=True)

        assert live_daemon.store.get_page_content(date(2026, 2, 12)) == []

    def test_no_outbound_fetch_by_default(self, live_daemon, clock):
        with patch('browsedigest.extraction.requests.get') as get:
            live_daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/a?id=9',
                                       'tab_id': 1})
            clock.advance(40)
            live_daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/b', 'tab_id': 1})
            live_daemon.close(wait=True)
        get.assert_not_called()

    @pytest.mark.parametrize("pushed, reason", [
        ({'url': 'https://www.chase.com/acct', 'text': LONG_TEXT}, 'not_tracked'),
        ({'url': 'https://example.com/', 'text': '   '}, 'no_text'),
        ({'url': 'https://example.com/', 'text': LONG_TEXT, 'incognito': True}, 'incognito'),
    ])
    def test_rejected_pushes(self, live_daemon, pushed, reason):
        assert live_daemon.handle_content(pushed) == {'accepted': False, 'reason': reason}
        assert len(live_daemon.content_inbox) == 0


def configure_webhook(config_manager):
    config_manager.update('webhook', 'url', 'https://agent.example/hooks/wake')
    config_manager.update('webhook', 'token', 'secret')
    config_manager.update('webhook', 'enabled', True)


def accepted_response():
    response = MagicMock()
    response.ok = True
    response.status_code = 200
    return response


class TestSendPage:

    def test_not_configured(self, live_daemon):
        assert live_daemon.send_current_page()['reason'] == 'not_configured'
        assert live_daemon.test_webhook()['reason'] == 'not_configured'

    def test_sends_current_page(self, live_daemon, config_manager):
        configure_webhook(config_manager)
        live_daemon.webhook.http = MagicMock()
        live_daemon.webhook.http.post.return_value = accepted_response()

        url = 'https://example.com/post?id=3'
        live_daemon.handle_signal({'kind': 'navigation', 'url': url, 'title': 'Post', 'tab_id': 2})
        live_daemon.handle_content({'url': url, 'tab_id': 2, 'text': LONG_TEXT, 'word_count': 60,
                                    'meta': {'author': 'Ada'}})

        result = live_daemon.send_current_page()

        assert result['success'] is True
        message = live_daemon.webhook.http.post.call_args.kwargs['json']['message']
        assert message.startswith('[Browse Digest] User sent page content:')
        assert 'Title: Post\nURL: https://example.com/post\nAuthor: Ada\nWord count: 60' in message
        assert message.endswith(LONG_TEXT.strip())

    def test_no_page_or_no_content(self, live_daemon, config_manager):
        configure_webhook(config_manager)
        live_daemon.webhook.http = MagicMock()
        assert live_daemon.send_current_page()['reason'] == 'no_page'

        live_daemon.handle_signal({'kind': 'navigation', 'url': 'https://example.com/', 'tab_id': 2})
        assert live_daemon.send_current_page()['reason'] == 'no_content'
        live_daemon.webhook.http.post.assert_not_called()

    def test_connection_test_message(self, live_daemon, config_manager):
        configure_webhook(config_manager)
        live_daemon.webhook.http = MagicMock()
        live_daemon.webhook.http.post.return_value = accepted_response()

        assert live_daemon.test_webhook()['success'] is True
        payload = live_daemon.webhook.http.post.call_args.kwargs['json']
        assert payload['message'].startswith('[Browse Digest] Connection test')
        assert payload['wakeMode'] == 'now'


class BlockingDeliverer:
    name = 'blocking'

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def is_configured(self):
        return True

    def deliver(self, report):
        self.started.set()
        self.release.wait(5)
        return DeliveryResult(True)


class TestDigestDelivery:

    def test_signals_handled_while_digest_delivers(self, daemon, clock):
        daemon.handle_signal({'kind': 'navigation', 'url': 'https://github.com/'})
        blocker = BlockingDeliverer()
        daemon.digest.deliverers = [blocker]
        results = []
        sender = threading.Thread(target=lambda: results.append(daemon.send_digest_now()))
        sender.start()
        try:
            assert blocker.started.wait(5)
            signal_thread = threading.Thread(
                target=daemon.handle_signal,
                args=({'kind': 'navigation', 'url': 'https://example.com/'},),
            )
            signal_thread.start()
            signal_thread.join(timeout=2)
            assert not signal_thread.is_alive()
        finally:
            blocker.release.set()
            sender.join(timeout=5)

        assert results[0].reason == 'sent'
        assert types(daemon) == ['navigation', 'navigation']
