import argparse
import sys
from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from backup import ResticClient, NotificationClient, ExternalToolError, SnapshotNotFound, log_message
from settings import Config, ConfigError, load_config

def _error_response(error: ExternalToolError):
    status = 404 if isinstance(error, SnapshotNotFound) else 500
    return jsonify({"error": str(error) or "Restic error"}), status

def create_app(config: Config, restic: ResticClient = None, notifier: NotificationClient = None) -> Flask:
    """Builds the Flask app around a loaded configuration."""
    app = Flask(__name__)
    CORS(app)

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.description or e.name}), e.code

    restic = restic or ResticClient(config)
    notifier = notifier or NotificationClient(config.notify)

    # --- API Endpoints ---
    @app.route('/stats', methods=['GET'])
    def stats_endpoint():
        """Endpoint to get the repository statistics."""
        try:
            stats = restic.get_stats().unwrap()
        except ExternalToolError as e:
            return _error_response(e)
        return jsonify(stats.to_dict())

    @app.route('/snapshots', methods=['GET'])
    def snapshots_endpoint():
        """Endpoint to list all snapshots in the repository."""
        try:
            snapshots = restic.list_snapshots().unwrap()
        except ExternalToolError as e:
            return _error_response(e)
        return jsonify([snapshot.to_dict() for snapshot in snapshots])

    @app.route('/snapshots/<snapshot_id>', methods=['DELETE'])
    def delete_snapshot_endpoint(snapshot_id):
        """Endpoint to forget a snapshot and prune the repository."""
        if not snapshot_id:
            return jsonify({"error": "Snapshot id is required"}), 400
        try:
            restic.delete_snapshot(snapshot_id).unwrap()
        except ExternalToolError as e:
            return _error_response(e)
        notifier.send("🗑️ Snapshot deleted", f"Snapshot {snapshot_id} was forgotten and the repository pruned.", priority=3)
        return jsonify({"message": "Snapshot deleted successfully"})

    @app.route('/restore', methods=['POST'])
    def restore_endpoint():
        """Endpoint to restore a snapshot into a target directory."""
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"error": "Expected a JSON object with snapshot_id and target_dir"}), 400
        snapshot_id = str(body.get("snapshot_id") or "")
        target_dir = str(body.get("target_dir") or "")
        if not snapshot_id:
            return jsonify({"error": "Snapshot id is required"}), 400
        if not target_dir.strip():
            return jsonify({"error": "Target directory is required"}), 400
        try:
            restic.restore_snapshot(snapshot_id, target_dir).unwrap()
        except ExternalToolError as e:
            return _error_response(e)
        notifier.send("✅ Snapshot restored", f"Snapshot {snapshot_id} was restored to {target_dir}.", priority=3)
        return jsonify({"message": "Snapshot restored successfully"})

    return app

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="HTTP API for a restic repository.")
    parser.add_argument('--config', help="Path to the YAML configuration file.")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"!!! {e}", file=sys.stderr)
        return 1

    app = create_app(config)
    log_message(f"Starting restic API server on {config.server.ip}:{config.server.port}...")
    try:
        app.run(host=config.server.ip, port=config.server.port, threaded=True)
    except SystemExit as e:
        # werkzeug exits with status 1 when the address is unavailable
        code = e.code if isinstance(e.code, int) else 1
        if code:
            print(f"!!! Could not bind {config.server.ip}:{config.server.port}", file=sys.stderr)
        return code
    return 0

if __name__ == '__main__':
    sys.exit(main())
