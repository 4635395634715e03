from services.audit_service.scheduling.poller import ScheduleLocks, SchedulePoller, calculate_next_run, queue_if_idle

__all__ = ["ScheduleLocks", "SchedulePoller", "calculate_next_run", "queue_if_idle"]
