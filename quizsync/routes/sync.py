from dataclasses import replace

import structlog
from flask import Blueprint, g, jsonify, request

from quizsync import get_engine
from quizsync.conflict_resolver import ConflictResolver
from quizsync.decorators import auth_required
from quizsync.exceptions import AuthError, DataError, QuotaError, SyncError
from quizsync.models import Mistake, format_timestamp
from quizsync.sync_engine import SyncResult

logger = structlog.get_logger(__name__)

bp = Blueprint('sync', __name__, url_prefix='/sync')


def _status_for(error):
    if isinstance(error, AuthError):
        return 401
    if isinstance(error, QuotaError):
        return 429
    if isinstance(error, DataError):
        return 422
    return 502


@bp.errorhandler(SyncError)
def handle_sync_error(error):
    logger.warning('sync request failed', path=request.path, error=error.message,
                   code=error.code)
    return jsonify({'error': error.message, 'code': error.code}), _status_for(error)


def _outcome_response(outcome):
    if outcome.result is SyncResult.FAILED:
        return jsonify(outcome.to_dict()), _status_for(outcome.error)
    if outcome.result is SyncResult.CONFLICT_DETECTED:
        return jsonify(outcome.to_dict()), 409
    return jsonify(outcome.to_dict())


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DataError('Request body must be a JSON object', code='bad_request')
    return data


# ============================================================
# Status and session start
# ============================================================

@bp.route('/status', methods=['GET'])
@auth_required
def status():
    engine = get_engine(g.uid)
    metadata = engine.get_sync_metadata()
    cursor = engine.local.get_last_sync_timestamp()
    return jsonify({
        'metadata': metadata.to_dict() if metadata else None,
        'last_sync': format_timestamp(cursor) if cursor else None,
        'local': {
            'seen_questions': len(engine.local.get_seen_question_ids()),
            'mistakes': len(engine.local.get_mistakes()),
        },
        'restoration': engine.restoration.state.to_dict(),
    })


@bp.route('/initial', methods=['POST'])
@auth_required
def initial():
    return _outcome_response(get_engine(g.uid).check_initial_sync())


# ============================================================
# User actions
# ============================================================

@bp.route('/seen', methods=['POST'])
@auth_required
def record_seen():
    question_id = str(_json_body().get('question_id') or '').strip()
    if not question_id:
        return jsonify({'error': 'question_id is required', 'code': 'bad_request'}), 400

    outcome = get_engine(g.uid).record_seen_question(question_id)
    if outcome is None:
        return jsonify({'result': 'skipped'})
    return _outcome_response(outcome)


@bp.route('/mistakes', methods=['POST'])
@auth_required
def record_mistake():
    data = _json_body()
    if not data.get('question'):
        return jsonify({'error': 'question is required', 'code': 'bad_request'}), 400
    return _outcome_response(get_engine(g.uid).record_mistake(Mistake.from_dict(data)))


@bp.route('/settings', methods=['PUT'])
@auth_required
def update_settings():
    data = _json_body()
    engine = get_engine(g.uid)
    current = engine.local.get_settings()
    settings = replace(
        current,
        oled_mode=bool(data.get('oled_mode', current.oled_mode)),
        exclude_active_questions=bool(data.get('exclude_active_questions',
                                               current.exclude_active_questions)),
        caching_enabled=bool(data.get('caching_enabled', current.caching_enabled)),
    )
    return _outcome_response(engine.update_settings(settings))


@bp.route('/filters', methods=['PUT'])
@auth_required
def update_filters():
    data = _json_body()
    engine = get_engine(g.uid)
    current = engine.local.get_filters()
    filters = replace(
        current,
        active_filters=set(data.get('active_filters', current.active_filters)),
        active_difficulty_filters=set(data.get('active_difficulty_filters',
                                               current.active_difficulty_filters)),
    )
    return _outcome_response(engine.update_filters(filters))


# ============================================================
# Pull, backup, restore
# ============================================================

@bp.route('/pull', methods=['POST'])
@auth_required
def pull():
    return _outcome_response(get_engine(g.uid).sync_from_cloud())


@bp.route('/backup', methods=['POST'])
@auth_required
def backup():
    metadata = get_engine(g.uid).backup_to_cloud()
    return jsonify({'result': 'success', 'metadata': metadata.to_dict()})


@bp.route('/restore', methods=['POST'])
@auth_required
def restore():
    engine = get_engine(g.uid)
    if _json_body().get('defer_mistakes'):
        summary = engine.restore_without_mistakes()
    else:
        summary = engine.restore_from_cloud()
    return jsonify({'result': 'success', 'restore': summary.to_dict()})


@bp.route('/restore/mistakes', methods=['POST'])
@auth_required
def restore_mistakes():
    summary = get_engine(g.uid).restore_mistakes_only()
    return jsonify({'result': 'success', 'restore': summary.to_dict()})


@bp.route('/resolve', methods=['POST'])
@auth_required
def resolve():
    resolution = _json_body().get('resolution')
    if not resolution:
        return jsonify({'error': 'resolution is required', 'code': 'bad_request'}), 400
    report = ConflictResolver(get_engine(g.uid)).resolve(resolution)
    return jsonify({'result': 'success', 'resolution': resolution, 'report': report})


# ============================================================
# Reset
# ============================================================

@bp.route('/seen', methods=['DELETE'])
@auth_required
def clear_seen():
    engine = get_engine(g.uid)
    deleted = engine.clear_seen_questions()
    engine.local.clear_seen_questions()
    return jsonify({'result': 'success', 'deleted': {'seen_questions': deleted}})


@bp.route('/mistakes', methods=['DELETE'])
@auth_required
def clear_mistakes():
    engine = get_engine(g.uid)
    deleted = engine.clear_mistakes()
    engine.local.clear_mistakes()
    return jsonify({'result': 'success', 'deleted': {'mistakes': deleted}})


@bp.route('/all', methods=['DELETE'])
@auth_required
def clear_all():
    engine = get_engine(g.uid)
    deleted = engine.clear_all()
    engine.local.clear_seen_questions()
    engine.local.clear_mistakes()
    return jsonify({'result': 'success', 'deleted': deleted})
