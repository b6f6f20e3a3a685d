"""
HTTP API for the gateway.

A thin Flask layer over the CacheCoordinator (streaming) and the storage
provider (track and group CRUD).
"""

import logging
from typing import Iterable

from flask import Flask, Response, jsonify, redirect, request, stream_with_context
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from shared.constants import AUDIO_CONTENT_TYPE
from shared.content_id import extract_content_id, parse_content_id
from shared.errors import InvalidContentId
from shared.models import Group, Hit, MissFailed, MissStarted, utc_now_iso

logger = logging.getLogger(__name__)

_TRUTHY = ('1', 'true', 'yes', 'on')


def _flag(name: str) -> bool:
    return (request.args.get(name) or '').strip().lower() in _TRUTHY


def _content_id(candidate: str) -> str:
    """
    Content id from a route path segment. An unencoded watch URL reaches us
    split at its `?`, so its `v` parameter sits in the query string.
    """
    if extract_content_id(candidate) is None and request.args.get('v'):
        return parse_content_id(request.args['v'])
    return parse_content_id(candidate)


def _audio_response(chunks: Iterable[bytes]) -> Response:
    def stream():
        try:
            for chunk in chunks:
                yield chunk
        finally:
            # Client went away or the body ended; detach without touching the job
            close = getattr(chunks, 'close', None)
            if close is not None:
                close()

    response = Response(stream_with_context(stream()), mimetype=AUDIO_CONTENT_TYPE)
    response.headers['Cache-Control'] = 'no-store'
    response.headers['Accept-Ranges'] = 'bytes'
    return response


def create_app(coordinator, store) -> Flask:
    """
    Build the Flask application.

    Args:
        coordinator: CacheCoordinator answering /stream and /jobs
        store: StorageProvider backing /tracks and /groups
    """
    app = Flask(__name__)
    CORS(app, methods=['GET', 'HEAD', 'OPTIONS', 'POST', 'PUT', 'DELETE'],
         expose_headers=['Content-Length', 'Accept-Ranges'])

    @app.errorhandler(InvalidContentId)
    def handle_invalid_id(e):
        return jsonify({"message": "Invalid video id"}), 400

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return jsonify({"message": e.description}), e.code
        logger.exception(f"[API] Unhandled error on {request.path}: {e}")
        return jsonify({"message": "Internal Server Error"}), 500

    @app.route('/healthz')
    def health():
        return jsonify({"status": "ok"})

    # --- Streaming ---

    @app.route('/stream/<path:candidate>', methods=['GET'])
    def stream_audio(candidate):
        content_id = _content_id(candidate)
        resolution = coordinator.resolve(content_id)

        if isinstance(resolution, Hit):
            if _flag('redirect'):
                return redirect(resolution.locator, code=302)
            logger.info(f"[Stream] Streaming {content_id} from {resolution.storage_key}")
            return _audio_response(store.read(resolution.storage_key))

        if isinstance(resolution, MissFailed):
            return jsonify({"error": resolution.error}), 500

        if _flag('live'):
            listener = coordinator.listen(content_id)
            if listener is not None:
                logger.info(f"[Stream] Live streaming {content_id} while caching")
                return _audio_response(listener)

        status = "started" if isinstance(resolution, MissStarted) else "in_progress"
        return jsonify({"caching": True, "status": status}), 202

    # --- Jobs ---

    @app.route('/jobs', methods=['GET'])
    def list_jobs():
        return jsonify({"jobs": coordinator.jobs()})

    @app.route('/jobs/<path:candidate>', methods=['GET'])
    def get_job(candidate):
        content_id = _content_id(candidate)
        snapshot = coordinator.job_status(content_id)
        if snapshot is None:
            return jsonify({"message": f"No job for {content_id}"}), 404
        return jsonify(snapshot)

    # --- Tracks ---

    @app.route('/tracks', methods=['GET'])
    def list_tracks():
        return jsonify({"tracks": [r.to_dict() for r in store.list_metadata()]})

    @app.route('/tracks/<path:candidate>', methods=['DELETE'])
    def delete_track(candidate):
        content_id = _content_id(candidate)
        if not store.delete_track(content_id):
            return jsonify({"message": "Track not found"}), 404
        return '', 204

    # --- Groups ---

    def _find_group(groups, group_id):
        return next((g for g in groups if g.id == group_id), None)

    def _track_ids(data) -> list:
        raw = data.get('trackIds') or []
        if not isinstance(raw, list):
            return []
        return [tid for tid in raw if isinstance(tid, str)]

    @app.route('/groups', methods=['GET'])
    def list_groups():
        return jsonify({"groups": [g.to_dict() for g in store.list_groups()]})

    @app.route('/groups', methods=['POST'])
    def create_group():
        data = request.get_json(silent=True) or {}
        name = (data.get('name') or '').strip() if isinstance(data.get('name'), str) else ''
        if not name:
            return jsonify({"message": "name is required"}), 400
        group = Group(id=Group.generate_id(), name=name, track_ids=_track_ids(data))
        with store.index_lock:
            groups = store.list_groups()
            groups.append(group)
            store.save_groups(groups)
        logger.info(f"[Store] Created group {group.id} ({group.name})")
        return jsonify(group.to_dict()), 201

    @app.route('/groups/<group_id>', methods=['PUT'])
    def update_group(group_id):
        data = request.get_json(silent=True) or {}
        with store.index_lock:
            groups = store.list_groups()
            group = _find_group(groups, group_id)
            if group is None:
                return jsonify({"message": "Group not found"}), 404
            if isinstance(data.get('name'), str) and data['name'].strip():
                group.name = data['name'].strip()
            if 'trackIds' in data:
                group.track_ids = _track_ids(data)
            group.updated_at = utc_now_iso()
            store.save_groups(groups)
        return jsonify(group.to_dict())

    @app.route('/groups/<group_id>', methods=['DELETE'])
    def delete_group(group_id):
        with store.index_lock:
            groups = store.list_groups()
            group = _find_group(groups, group_id)
            if group is None:
                return jsonify({"message": "Group not found"}), 404
            store.save_groups([g for g in groups if g.id != group_id])
        logger.info(f"[Store] Deleted group {group_id}")
        return '', 204

    return app
