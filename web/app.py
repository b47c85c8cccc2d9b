#!/usr/bin/env python3
"""Local HTTP API for Browse Digest.

The browser extension posts its signals to /api/events and the text it reads
from live pages to /api/content. The settings page and popup read status,
trigger digests and test the webhook through the other routes. The app wraps
a running DigestDaemon and never touches state directly.
"""

from datetime import date

from flask import Flask, jsonify, request

from browsedigest.daemon import DigestDaemon


def _parse_date(value):
    """Parse YYYY-MM-DD, returning None when absent."""
    if not value:
        return None
    return date.fromisoformat(value)


def create_app(daemon: DigestDaemon) -> Flask:
    """Create the Flask app bound to a daemon instance."""
    app = Flask(__name__)
    app.config['DAEMON'] = daemon

    @app.route('/api/events', methods=['POST'])
    def post_event():
        """Ingest one browser signal.

        Request body:
            {"kind": "navigation", "url": "...", "title": "...", "tab_id": 12}

        Returns:
            {"accepted": true, "event": {...}} or
            {"accepted": false, "reason": "..."}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or 'kind' not in data:
            return jsonify({"error": "Expected a JSON object with a 'kind' field"}), 400
        result = daemon.handle_signal(data)
        return jsonify(result), 200 if result.get('accepted') else 202

    @app.route('/api/status')
    def get_status():
        return jsonify(daemon.status())

    @app.route('/api/page-times')
    def get_page_times():
        """Dwell time per domain for the current digest period."""
        return jsonify({
            "page_times": daemon.status()['page_times'],
            "total_active_seconds": round(daemon.tracker.total_active_seconds(), 1),
        })

    @app.route('/api/digest/preview')
    def preview_digest():
        """Build the digest for ?date=YYYY-MM-DD (default today) without sending it."""
        try:
            day = _parse_date(request.args.get('date'))
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid date format. Use YYYY-MM-DD"}), 400

        report = daemon.digest.build(day)
        if report is None:
            return jsonify({"error": "No events for that day", "reason": "no_events"}), 404
        return jsonify({**report.metadata(), "text": report.text})

    @app.route('/api/digest/send', methods=['POST'])
    def send_digest():
        """Manual digest trigger.

        Request body (optional):
            {"date": "2026-02-12"}
        """
        data = request.get_json(silent=True) or {}
        try:
            day = _parse_date(data.get('date'))
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid date format. Use YYYY-MM-DD"}), 400
        result = daemon.send_digest_now(day)
        return jsonify(result.to_dict())

    @app.route('/api/content', methods=['POST'])
    def post_content():
        """Ingest readable text the extension extracted from the live page.

        Request body:
            {"url": "...", "tab_id": 12, "text": "...", "word_count": 812,
             "meta": {"title": "...", "author": "...", "publish_date": "..."}}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Expected a JSON object"}), 400
        result = daemon.handle_content(data)
        return jsonify(result), 200 if result.get('accepted') else 202

    @app.route('/api/pages/send', methods=['POST'])
    def send_page():
        """Send the current page's text to the agent webhook.

        The body may carry the extraction itself (same shape as /api/content);
        without one the page currently being tracked is used.
        """
        data = request.get_json(silent=True)
        if data is not None and not isinstance(data, dict):
            return jsonify({"error": "Expected a JSON object"}), 400
        return jsonify(daemon.send_current_page(data or None))

    @app.route('/api/webhook/test', methods=['POST'])
    def test_webhook():
        """Post a connection test message to the configured webhook."""
        return jsonify(daemon.test_webhook())

    @app.route('/api/config', methods=['GET'])
    def get_config():
        return jsonify(daemon.config_manager.to_dict(mask_secrets=True))

    @app.route('/api/config', methods=['PATCH'])
    def update_config():
        """Update one configuration value.

        Request body:
            {"section": "digest", "key": "time", "value": "21:30"}

        Returns:
            {"success": true/false, "requires_restart": true/false, "config": {...}}
        """
        data = request.get_json(silent=True) or {}
        if not all(k in data for k in ['section', 'key', 'value']):
            return jsonify({"error": "Missing required fields: section, key, value"}), 400

        section, key = data['section'], data['key']
        try:
            daemon.config_manager.coerce(section, key, data['value'])
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        try:
            changed = daemon.config_manager.update(section, key, data['value'])
        except OSError as e:
            return jsonify({"error": f"Failed to save config: {e}"}), 500

        restart_keys = {
            'web': ['host', 'port'],
            'storage': ['data_dir'],
        }
        requires_restart = section in restart_keys and key in restart_keys[section]

        return jsonify({
            "success": changed,
            "requires_restart": requires_restart,
            "config": daemon.config_manager.to_dict(mask_secrets=True),
        })

    @app.route('/api/export')
    def export_events():
        return jsonify(daemon.store.export())

    @app.route('/api/clear', methods=['POST'])
    def clear_events():
        """Erase the event log and page content. Irreversible."""
        daemon.store.clear()
        return jsonify({"success": True, "stats": daemon.store.stats()})

    return app
