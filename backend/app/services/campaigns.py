from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

from backend.app.models import (
    CampaignRecord,
    CampaignStatus,
    ContactRecord,
    JobType,
    QueueJobRecord,
    utc_now,
)
from backend.app.services.gateway import GatewayError, GatewayFactory
from backend.app.services.job_queue import JobQueue
from backend.app.services.messaging import MessageSender
from backend.app.store import DataStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("whatsapp_inbox.campaigns")

TERMINAL_STATUSES = {
    CampaignStatus.sent,
    CampaignStatus.completed_with_errors,
    CampaignStatus.failed,
}


class EmptyContactListError(Exception):
    pass


def personalize_message(template: str, contact: ContactRecord) -> str:
    return (
        template.replace("{name}", contact.name or "")
        .replace("{company}", contact.company or "")
        .replace("{phone}", contact.phone or "")
    )


def campaign_final_status(total: int, failed: int, failure_threshold: float) -> CampaignStatus:
    if total == 0:
        return CampaignStatus.sent
    if failed >= total:
        return CampaignStatus.failed
    if failed / total <= failure_threshold:
        return CampaignStatus.sent
    return CampaignStatus.completed_with_errors


class CampaignDispatcher:
    def __init__(
        self,
        store: DataStore,
        queue: JobQueue,
        gateway_factory: GatewayFactory,
        *,
        send_delay_seconds: float = 1.0,
        failure_threshold: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.queue = queue
        self.gateway_factory = gateway_factory
        self.send_delay_seconds = send_delay_seconds
        self.failure_threshold = failure_threshold
        self.sleep = sleep

    def dispatch(
        self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None
    ) -> tuple[CampaignRecord, QueueJobRecord]:
        scoped = self.store.scoped(tenant_id)
        campaign = scoped.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.draft:
            raise StoreConflictError(
                f"campaign {campaign_id} already {campaign.status.value}"
            )
        contacts = scoped.list_active_list_contacts(campaign.contact_list_id)
        if not contacts:
            raise EmptyContactListError(
                f"contact list has no active contacts: {campaign.contact_list_id}"
            )
        instance = MessageSender(scoped, self.gateway_factory).resolve_instance(
            campaign.instance_id
        )

        run_at = now or utc_now()
        scheduled = campaign.scheduled_for is not None and campaign.scheduled_for > run_at
        status = CampaignStatus.scheduled if scheduled else CampaignStatus.sending
        with scoped.transaction() as conn:
            campaign = scoped.update_campaign(
                campaign.id,
                conn=conn,
                instance_id=instance.id,
                total=len(contacts),
                sent=0,
                failed=0,
                progress=0.0,
                status=status,
            )
            job = self.queue.add_job(
                JobType.send_campaign,
                {
                    "user_id": tenant_id,
                    "campaign_id": campaign.id,
                    "instance_id": instance.id,
                    "contact_ids": [contact.id for contact in contacts],
                },
                next_eligible_at=campaign.scheduled_for if scheduled else None,
                conn=conn,
            )
        logger.info(
            "campaign_dispatched campaign_id=%s job_id=%s total=%s status=%s",
            campaign.id,
            job.id,
            campaign.total,
            status.value,
        )
        return campaign, job

    def run_job(self, payload: dict[str, Any]) -> CampaignRecord:
        scoped = self.store.scoped(payload["user_id"])
        campaign = scoped.get_campaign(payload["campaign_id"])
        if campaign.status in TERMINAL_STATUSES:
            logger.info(
                "campaign_run_skipped campaign_id=%s status=%s", campaign.id, campaign.status.value
            )
            return campaign
        if campaign.status != CampaignStatus.sending:
            campaign = scoped.update_campaign(campaign.id, status=CampaignStatus.sending)

        sender = MessageSender(scoped, self.gateway_factory)
        instance = sender.resolve_instance(payload.get("instance_id") or campaign.instance_id)
        contact_ids: list[str] = list(payload.get("contact_ids", []))
        total = len(contact_ids)
        # counters are saved after every contact, so a retried job resumes after them
        sent = campaign.sent
        failed = campaign.failed
        offset = min(sent + failed, total)
        if offset:
            logger.info("campaign_resumed campaign_id=%s offset=%s", campaign.id, offset)
        for position, contact_id in enumerate(contact_ids[offset:]):
            if position and self.send_delay_seconds > 0:
                self.sleep(self.send_delay_seconds)
            contact: Optional[ContactRecord] = None
            body = campaign.message
            try:
                contact = scoped.get_contact(contact_id)
                body = personalize_message(campaign.message, contact)
                sender.send(
                    contact_id=contact.id,
                    body=body,
                    has_media=bool(campaign.media_url),
                    media_url=campaign.media_url,
                    media_type=campaign.media_type,
                    campaign_id=campaign.id,
                    contact=contact,
                    instance=instance,
                )
                sent += 1
            except (GatewayError, StoreNotFoundError) as exc:
                failed += 1
                logger.warning(
                    "campaign_send_failed campaign_id=%s contact_id=%s error=%s",
                    campaign.id,
                    contact_id,
                    exc,
                )
                if contact is not None:
                    sender.record_failure(
                        contact_id=contact.id, body=body, error=str(exc), campaign_id=campaign.id
                    )
            scoped.update_campaign(
                campaign.id,
                sent=sent,
                failed=failed,
                progress=round((sent + failed) / total * 100, 2),
            )

        status = campaign_final_status(total, failed, self.failure_threshold)
        campaign = scoped.update_campaign(
            campaign.id, total=total, sent=sent, failed=failed, progress=100.0, status=status
        )
        logger.info(
            "campaign_completed campaign_id=%s total=%s sent=%s failed=%s status=%s",
            campaign.id,
            total,
            sent,
            failed,
            status.value,
        )
        return campaign

    def abandon(self, payload: dict[str, Any], exc: Exception) -> Optional[CampaignRecord]:
        """Close a campaign whose send job ran out of attempts."""
        scoped = self.store.scoped(payload["user_id"])
        campaign = scoped.get_campaign(payload["campaign_id"])
        if campaign.status in TERMINAL_STATUSES:
            return None
        campaign = scoped.update_campaign(campaign.id, status=CampaignStatus.failed)
        logger.warning(
            "campaign_abandoned campaign_id=%s sent=%s failed=%s error=%s",
            campaign.id,
            campaign.sent,
            campaign.failed,
            exc,
        )
        return campaign
