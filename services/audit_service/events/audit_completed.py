import json
from datetime import datetime, timezone

import aio_pika
from pydantic import BaseModel

from services.audit_service.config import settings

EXCHANGE_NAME = "seo_master.events"
ROUTING_KEY = "audit.site.completed"


class AuditCompletedEvent(BaseModel):
    event_name: str = "AuditCompleted"
    audit_id: str
    project_id: str | None = None
    site_url: str
    total_pages: int
    issues_summary: dict
    report_ref: str | None = None
    produced_at: str

    @classmethod
    def build(cls, audit_id: str, site_url: str, total_pages: int, issues_summary: dict, project_id: str | None = None, report_ref: str | None = None) -> "AuditCompletedEvent":
        return cls(
            audit_id=audit_id,
            project_id=project_id,
            site_url=site_url,
            total_pages=total_pages,
            issues_summary=issues_summary,
            report_ref=report_ref,
            produced_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.model_dump(), ensure_ascii=False).encode("utf-8")


async def publish_audit_completed(event: AuditCompletedEvent) -> bool:
    if not settings.rabbitmq_url:
        return False
    conn = await aio_pika.connect_robust(settings.rabbitmq_url)
    async with conn:
        ch = await conn.channel()
        ex = await ch.declare_exchange(EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True)
        msg = aio_pika.Message(body=event.to_bytes(), content_type="application/json", delivery_mode=aio_pika.DeliveryMode.PERSISTENT)
        await ex.publish(msg, routing_key=ROUTING_KEY)
    return True
