from qrattend.modules.activity_log import ActivityLog
from qrattend.modules.maintenance import MaintenanceScheduler


def test_run_maintenance_purges_and_alerts(registry, activity_log, notifier, configuration,
                                           teacher, clock, db):
    registry.open_session(configuration['id'], teacher.id)
    activity_log.record(teacher.id, ActivityLog.ACTION_LOGIN)

    maintenance = MaintenanceScheduler(registry, activity_log, notifier,
                                       session_retention_minutes=60, activity_retention_days=90)

    assert maintenance.run_maintenance() == {'sessions_purged': 0, 'events_purged': 0}
    assert notifier.get_recent_alerts() == []

    clock.advance(days=91)
    summary = maintenance.run_maintenance()

    assert summary['sessions_purged'] == 1
    # preset_created, qr_generated and login
    assert summary['events_purged'] == 3
    assert db.execute_query("SELECT COUNT(*) AS n FROM sessions", fetch_all=False)['n'] == 0
    assert notifier.get_recent_alerts()[0]['type'] == 'maintenance'


def test_scheduler_start_and_shutdown(registry, activity_log):
    maintenance = MaintenanceScheduler(registry, activity_log, interval_minutes=10)
    maintenance.start()
    try:
        assert maintenance.scheduler.running
        job = maintenance.scheduler.get_job(MaintenanceScheduler.JOB_ID)
        assert job is not None

        # Starting twice keeps the same scheduler
        scheduler = maintenance.scheduler
        maintenance.start()
        assert maintenance.scheduler is scheduler
    finally:
        maintenance.shutdown()
    assert not maintenance.scheduler.running
