"""
Template Status Sync — mirrors the provider's template status into storage.

The provider deactivates templates on its side (quality rating, policy).
A template reported INACTIVE is stored as PAUSED so the dispatch processor
short-circuits sends for it; a PAUSED template the provider reports active
again is restored to APPROVED.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.whatsapp_adapter import WhatsAppAdapter
from database.store_base import BaseDispatchStore
from models.schemas import TemplateStatus

logger = structlog.get_logger()


class TemplateStatusSync:

    def __init__(self, store: BaseDispatchStore, adapter: WhatsAppAdapter):
        self.store = store
        self.adapter = adapter

    async def sync(self, tenant: str, subject_id: str, template_name: str) -> Optional[str]:
        """Returns the status written, or None when nothing changed or the sync failed."""
        try:
            template = await self.store.get_template(tenant, subject_id, template_name)
            user = await self.store.get_user(tenant, subject_id)
            if template is None or user is None:
                logger.warning("template_sync_missing_record",
                               tenant=tenant,
                               template=template_name,
                               has_template=template is not None,
                               has_user=user is not None)
                return None

            response = await self.adapter.fetch_template(user.waba_id or "", template.template_id or "")
            provider_status = ((response or {}).get("template") or {}).get("status")

            if provider_status == "INACTIVE":
                new_status = TemplateStatus.PAUSED.value
            elif template.is_paused:
                new_status = TemplateStatus.APPROVED.value
            else:
                return None

            if new_status == template.status:
                return None
            await self.store.set_template_status(tenant, subject_id, template_name, new_status)
            logger.info("template_status_synced",
                        tenant=tenant,
                        template=template_name,
                        provider_status=provider_status,
                        status=new_status)
            return new_status
        except Exception as e:
            logger.error("template_sync_failed", tenant=tenant, template=template_name, error=str(e))
            return None
