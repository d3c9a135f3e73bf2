"""
Schedule Routes Blueprint
Prayer occurrences and recurring templates per masjid
"""
from flask import Blueprint, request, jsonify
from flask_login import current_user

from models import db, Masjid, Schedule
from utils.errors import NotFoundError, ValidationError
from utils.permissions import login_required, require_masjid_authority
from utils.schedule_utils import get_zone, update_schedule, upsert_schedule, upsert_template

schedule_bp = Blueprint('schedules', __name__)

MAX_BULK_ITEMS = 20


def _get_masjid(masjid_id):
    masjid = db.session.get(Masjid, masjid_id)
    if masjid is None:
        raise NotFoundError('Masjid not found', details={'masjidId': masjid_id})
    return masjid


def _json_body():
    data = request.get_json(silent=True)
    if not data:
        raise ValidationError('Missing request body')
    return data


@schedule_bp.route('/<masjid_id>', methods=['GET'])
def list_schedules(masjid_id):
    """Public list of occurrences by local date or date range"""
    query = Schedule.query.filter(Schedule.masjid_id == masjid_id)

    if request.args.get('date'):
        query = query.filter(Schedule.date == request.args['date'])
    if request.args.get('startDate'):
        query = query.filter(Schedule.date >= request.args['startDate'])
    if request.args.get('endDate'):
        query = query.filter(Schedule.date <= request.args['endDate'])

    items = query.order_by(Schedule.adhan_at_utc).all()
    return jsonify({'message': 'Schedules fetched', 'data': [s.to_dict() for s in items]})


@schedule_bp.route('/<masjid_id>', methods=['POST'])
@login_required
def create_schedule(masjid_id):
    """Create or update one occurrence from UTC instants or local times"""
    masjid = _get_masjid(masjid_id)
    require_masjid_authority(current_user, masjid.id)

    schedule, created = upsert_schedule(masjid, _json_body())
    if created:
        return jsonify({'message': 'Schedule created', 'data': schedule.to_dict()}), 201
    return jsonify({'message': 'Schedule updated', 'data': schedule.to_dict()})


@schedule_bp.route('/<masjid_id>/bulk', methods=['POST'])
@login_required
def bulk_upsert(masjid_id):
    masjid = _get_masjid(masjid_id)
    require_masjid_authority(current_user, masjid.id)

    items = _json_body().get('schedules')
    if not isinstance(items, list) or not 1 <= len(items) <= MAX_BULK_ITEMS:
        raise ValidationError(f'schedules must be a list of 1 to {MAX_BULK_ITEMS} items')

    results = [upsert_schedule(masjid, item)[0].to_dict() for item in items]
    return jsonify({'message': 'Schedules upserted', 'data': results})


@schedule_bp.route('/<masjid_id>/template', methods=['POST', 'PUT'])
@login_required
def save_template(masjid_id):
    """Create or replace the recurring template of one prayer"""
    masjid = _get_masjid(masjid_id)
    require_masjid_authority(current_user, masjid.id)

    data = _json_body()
    template = upsert_template(masjid, data)
    payload = template.to_dict()
    payload['timezone'] = get_zone(data.get('timezone') or masjid.timezone).key
    return jsonify({'message': 'Schedule template saved', 'data': payload})


@schedule_bp.route('/<masjid_id>/<schedule_id>', methods=['PATCH'])
@login_required
def patch_schedule(masjid_id, schedule_id):
    masjid = _get_masjid(masjid_id)
    require_masjid_authority(current_user, masjid.id)

    schedule = Schedule.query.filter_by(id=schedule_id, masjid_id=masjid.id).first()
    if schedule is None:
        raise NotFoundError('Schedule not found')

    schedule = update_schedule(masjid, schedule, _json_body())
    return jsonify({'message': 'Schedule updated', 'data': schedule.to_dict()})
