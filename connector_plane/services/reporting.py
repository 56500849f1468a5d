from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from connector_plane.domain.contracts import DeliveryStore
from connector_plane.domain.models import ConnectorDelivery, DeliverySummary
from connector_plane.domain.use_cases.insights import ConnectorInsights, compute_insights
from connector_plane.domain.use_cases.outcomes import OutcomeTrend, summarize_outcomes
from connector_plane.domain.use_cases.reliability import ReliabilityRecord

SNAPSHOT_PAGE_SIZE = 1_000


@dataclass
class ConnectorReporting:
    """Point-in-time reads feeding the pure insight/outcome/ranking functions."""

    delivery_store: DeliveryStore
    page_size: int = SNAPSHOT_PAGE_SIZE

    async def summaries(
        self,
        *,
        project_id: str,
        connector_types: Sequence[str],
        now: datetime,
    ) -> dict[str, DeliverySummary]:
        return {
            connector_type: await self.delivery_store.summarize(
                project_id=project_id,
                connector_type=connector_type,
                now=now,
            )
            for connector_type in connector_types
        }

    async def insights(
        self,
        *,
        project_id: str,
        connector_type: str,
        lookback_hours: int,
        now: datetime,
    ) -> ConnectorInsights:
        deliveries = await self._recent(
            project_id=project_id,
            connector_type=connector_type,
            since=now - timedelta(hours=lookback_hours),
        )
        attempts = await self.delivery_store.list_attempts_by_delivery(
            delivery_ids=[item.id for item in deliveries],
        )
        return compute_insights(
            deliveries=deliveries,
            attempts_by_delivery=attempts,
            lookback_hours=lookback_hours,
            now=now,
        )

    async def reliability_records(
        self,
        *,
        project_id: str,
        connector_types: Sequence[str],
        lookback_hours: int,
        now: datetime,
    ) -> list[ReliabilityRecord]:
        summaries = await self.summaries(project_id=project_id, connector_types=connector_types, now=now)
        records = []
        for connector_type in connector_types:
            insights = await self.insights(
                project_id=project_id,
                connector_type=connector_type,
                lookback_hours=lookback_hours,
                now=now,
            )
            records.append(
                ReliabilityRecord(
                    connector_type=connector_type,
                    summary=summaries[connector_type],
                    insights=insights,
                )
            )
        return records

    async def baseline_records(
        self,
        *,
        project_id: str,
        connector_types: Sequence[str],
        lookback_hours: int,
        now: datetime,
    ) -> list[ReliabilityRecord]:
        """Records for the window right before the current one.

        Queue pressure is reconstructed from the statuses of deliveries
        created in that window; nothing counts as due.
        """
        baseline_end = now - timedelta(hours=lookback_hours)
        records = []
        for connector_type in connector_types:
            insights = await self.insights(
                project_id=project_id,
                connector_type=connector_type,
                lookback_hours=lookback_hours,
                now=baseline_end,
            )
            counts = insights.status_counts
            records.append(
                ReliabilityRecord(
                    connector_type=connector_type,
                    summary=DeliverySummary(
                        total=insights.delivery_count,
                        queued=counts.queued,
                        retrying=counts.retrying,
                        delivered=counts.delivered,
                        dead_lettered=counts.dead_lettered,
                    ),
                    insights=insights,
                )
            )
        return records

    async def outcomes(
        self,
        *,
        project_id: str,
        connector_type: str | None,
        lookback_hours: int,
        now: datetime,
    ) -> OutcomeTrend:
        deliveries = await self._recent(
            project_id=project_id,
            connector_type=connector_type,
            since=now - timedelta(hours=lookback_hours * 2),
        )
        return summarize_outcomes(deliveries=deliveries, lookback_hours=lookback_hours, now=now)

    async def _recent(
        self,
        *,
        project_id: str,
        connector_type: str | None,
        since: datetime,
    ) -> list[ConnectorDelivery]:
        """Every delivery created since `since`, read in keyset pages."""
        deliveries: list[ConnectorDelivery] = []
        before: tuple[datetime, str] | None = None
        while True:
            page = await self.delivery_store.list_deliveries(
                project_id=project_id,
                connector_type=connector_type,
                created_after=since,
                limit=self.page_size,
                before=before,
            )
            deliveries.extend(page)
            if len(page) < self.page_size:
                return deliveries
            last = page[-1]
            before = (last.created_at, last.id)
