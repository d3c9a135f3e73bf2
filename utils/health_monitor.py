"""
System Health Monitor
Readiness checks for the database, the delayed job queue, relays and providers
"""
from datetime import timedelta
from typing import Dict, Any
from flask import current_app
from sqlalchemy import func, text
from models import db, Broadcast, BroadcastStatus, JobStatus, QueuedJob, utcnow
from utils.hls import get_relay_manager
from utils.livekit import get_room_service
from utils.push import get_push_gateway


class HealthMonitor:
    """Collects component status for the readiness endpoint"""

    # Jobs overdue by more than this mean no worker is consuming
    JOB_BACKLOG_WARNING_SECONDS = 120

    @staticmethod
    def check_all_health() -> Dict[str, Any]:
        """
        Run all health checks

        Returns:
            Dict with per-component status and an overall 'ok' flag
        """
        results = {
            'checked_at': utcnow().isoformat() + 'Z',
            'database': HealthMonitor.check_database(),
            'jobs': HealthMonitor.check_job_queue(),
            'relays': HealthMonitor.check_relays(),
            'providers': HealthMonitor.check_providers(),
        }
        results['ok'] = results['database']['ok']

        if not results['ok']:
            current_app.logger.warning(f"Readiness check failed: {results['database'].get('error')}")
        return results

    @staticmethod
    def check_database() -> Dict[str, Any]:
        try:
            db.session.execute(text('SELECT 1'))
            return {'ok': True}
        except Exception as e:
            db.session.rollback()
            return {'ok': False, 'error': str(e)}

    @staticmethod
    def check_job_queue() -> Dict[str, Any]:
        """
        Pending/failed counts and whether due jobs are piling up

        Returns:
            Dict with queue backlog details and alerts
        """
        now = utcnow()
        try:
            counts = dict(
                db.session.query(QueuedJob.status, func.count(QueuedJob.id)).group_by(QueuedJob.status).all()
            )
            overdue = QueuedJob.query.filter(
                QueuedJob.status == JobStatus.PENDING,
                QueuedJob.run_at < now - timedelta(seconds=HealthMonitor.JOB_BACKLOG_WARNING_SECONDS)
            ).count()
        except Exception as e:
            db.session.rollback()
            return {'ok': False, 'error': str(e)}

        alerts = []
        if overdue:
            alerts.append({'type': 'job_backlog', 'message': f'{overdue} jobs overdue; is the worker running?'})

        return {
            'ok': not alerts,
            'pending': counts.get(JobStatus.PENDING, 0),
            'running': counts.get(JobStatus.RUNNING, 0),
            'failed': counts.get(JobStatus.FAILED, 0),
            'overdue': overdue,
            'alerts': alerts
        }

    @staticmethod
    def check_relays() -> Dict[str, Any]:
        live = Broadcast.query.filter(Broadcast.status == BroadcastStatus.LIVE).count()
        return {
            'enabled': bool(current_app.config.get('HLS_ENABLED')),
            'active_in_process': get_relay_manager().active_count(),
            'live_broadcasts': live
        }

    @staticmethod
    def check_providers() -> Dict[str, Any]:
        push = get_push_gateway()
        return {
            'livekit': get_room_service().config_status(),
            'fcm': {'ok': bool(push.fcm_service_account)},
            'apns': {'ok': push.apns_configured}
        }
