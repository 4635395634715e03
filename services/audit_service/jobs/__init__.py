from services.audit_service.jobs.queue import Job, JobQueue, JobStatus, JobType

__all__ = ["Job", "JobQueue", "JobStatus", "JobType"]
