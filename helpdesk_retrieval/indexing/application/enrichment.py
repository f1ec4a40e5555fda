"""
Record Enrichment
=================

Collects the people and company context of a legacy record for chunk
metadata. Every lookup degrades to empty values on failure: enrichment
never fails a record.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from helpdesk_retrieval.config import settings
from helpdesk_retrieval.indexing.domain import LegacyRecord, LegacyReply
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from helpdesk_retrieval.indexing.application.services import ILegacyRecordSource

logger = get_logger(__name__)

MAX_RELATED_DEALS = 5


class RecordEnricher:
    """Reads enrichment data through the legacy source port."""

    def __init__(self, legacy_source: "ILegacyRecordSource", legacy_base_url: Optional[str] = None):
        self._source = legacy_source
        self._base_url = (legacy_base_url or settings.legacy_base_url).rstrip("/")

    def record_url(self, record_id: int) -> str:
        return f"{self._base_url}/request/{record_id}"

    async def employee_info(self, record: LegacyRecord, replies: List[LegacyReply]) -> Dict[str, Any]:
        """
        Manager and specialists who worked on the record.

        A reply author is a specialist when the reply is internal or its
        author differs from the record's customer.
        """
        result: Dict[str, Any] = {"specialists": [], "specialistNames": []}
        specialists: List[Dict[str, Any]] = result["specialists"]

        try:
            if record.manager_id:
                manager = await self._source.get_manager_info(record.manager_id)
                if manager is not None:
                    result["managerName"] = manager.full_name
                    result["managerDepartment"] = manager.department_name
                    specialists.append({"id": record.manager_id, "name": manager.full_name})

            specialist_ids: List[int] = []
            for reply in replies:
                if not reply.customer_id:
                    continue
                if reply.customer_id != record.customer_id or reply.is_internal:
                    if reply.customer_id not in specialist_ids:
                        specialist_ids.append(reply.customer_id)

            if specialist_ids:
                names = await self._source.get_employee_names(specialist_ids)
                for employee_id, name in names.items():
                    if not any(s["name"] == name for s in specialists):
                        specialists.append({"id": employee_id, "name": name})
        except Exception as e:
            logger.warning(
                "Failed to load employee info",
                extra={"request_id": record.id, "error": str(e)}
            )

        result["specialistNames"] = [s["name"] for s in specialists]
        return result

    async def customer_info(self, customer_id) -> Dict[str, Any]:
        """Customer identity, counterparty and its latest deals."""
        result: Dict[str, Any] = {"customerIsEmployee": False}
        if not customer_id:
            return result

        try:
            customer = await self._source.get_customer_rich_info(customer_id)
            if customer is None:
                return result

            result.update({
                "customerName": customer.full_name,
                "customerEmail": customer.email,
                "customerPhone": customer.phone,
                "customerIsEmployee": customer.is_employee,
                "customerTotalRequests": customer.total_requests,
            })

            counterparty = customer.counterparty
            if counterparty is not None:
                result.update({
                    "counterpartyId": counterparty.id,
                    "counterpartyName": counterparty.name,
                    "counterpartyInn": counterparty.inn,
                    "counterpartyUrl": f"{self._base_url}/counterparty/{counterparty.id}",
                })
                deals = await self._source.get_deals_by_counterparty(counterparty.id)
                if deals:
                    result["relatedDeals"] = [
                        {
                            "id": deal.id,
                            "name": deal.name,
                            "sum": deal.sum,
                            "isClosed": deal.is_closed,
                            "url": f"{self._base_url}/deal/{deal.id}",
                        }
                        for deal in deals[:MAX_RELATED_DEALS]
                    ]
        except Exception as e:
            logger.warning(
                "Failed to load customer info",
                extra={"customer_id": customer_id, "error": str(e)}
            )

        return result
