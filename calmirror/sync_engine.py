from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Callable

from calmirror.config_manager import ConfigManager
from calmirror.destinations import Destination, DestinationEvent, DestinationNotFoundError, build_destination
from calmirror.mapper import DestinationPayload, to_destination_payload
from calmirror.models import (
    AppConfig,
    CanonicalOccurrence,
    CycleResult,
    MappingRecord,
    SubscriptionConfig,
    SubscriptionOutcome,
    SyncMetrics,
    SyncResult,
    SyncWindow,
    serialize_datetime,
)
from calmirror.reconciler import plan_reconciliation
from calmirror.sources import SourceClient, build_source_client
from calmirror.state_store import LAST_RUN_STATUS, LAST_SUCCESSFUL_SYNC_TS, StateStore
from calmirror.timezones import TemporalResolver

logger = logging.getLogger(__name__)

SourceFactory = Callable[[SubscriptionConfig, AppConfig, TemporalResolver], SourceClient]
DestinationFactory = Callable[[AppConfig], Destination]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started_at: datetime) -> int:
    return int((_utc_now() - started_at).total_seconds() * 1000)


def _error_message(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        source_factory: SourceFactory = build_source_client,
        destination_factory: DestinationFactory = build_destination,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.source_factory = source_factory
        self.destination_factory = destination_factory
        self.clock = clock
        self._resolvers: dict[str, TemporalResolver] = {}

    def resolver_for(self, config: AppConfig) -> TemporalResolver:
        zone_name = config.sync.timezone or "UTC"
        if zone_name not in self._resolvers:
            self._resolvers[zone_name] = TemporalResolver(default_zone=zone_name)
        return self._resolvers[zone_name]

    def compute_window(self, config: AppConfig, now: datetime | None = None) -> SyncWindow:
        return SyncWindow.around(now or self.clock(), config.sync.lookback_days, config.sync.lookahead_days)

    def _audit(
        self,
        subscription_id: str,
        source_event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None,
    ) -> None:
        self.state_store.record_audit_event(
            subscription_id=subscription_id,
            source_event_id=source_event_id,
            action=action,
            details=details,
            run_id=run_id,
        )

    def _save_mapping(
        self,
        subscription_id: str,
        occurrence: CanonicalOccurrence,
        event: DestinationEvent,
        payload: DestinationPayload,
    ) -> None:
        self.state_store.upsert_mapping(
            MappingRecord(
                subscription_id=subscription_id,
                source_event_id=occurrence.id,
                destination_event_id=event.id,
                destination_etag=event.etag,
                series_id=occurrence.series_id,
                source_last_modified=serialize_datetime(occurrence.last_modified),
                payload_hash=payload.fingerprint(),
                last_synced_at=serialize_datetime(self.clock()) or "",
            )
        )

    def run_cycle(
        self,
        subscription: SubscriptionConfig,
        window: SyncWindow,
        source: SourceClient,
        destination: Destination,
        target_calendar_id: str,
        run_id: int | None = None,
    ) -> CycleResult:
        """Mirror one subscription's window into the destination calendar."""
        metrics = SyncMetrics()
        source_kind = subscription.source.kind
        try:
            batch = source.list_occurrences(window)
            metrics.fetched = batch.fetched_count
            metrics.considered = len(batch.occurrences)
            plan = plan_reconciliation(batch.occurrences, self.state_store.list_mappings(subscription.id))

            for occurrence in plan.creates:
                payload = to_destination_payload(occurrence, subscription.id, source_kind)
                created = destination.create_event(target_calendar_id, payload)
                self._save_mapping(subscription.id, occurrence, created, payload)
                metrics.created += 1
                self._audit(
                    subscription.id,
                    occurrence.id,
                    "create",
                    {"destination_event_id": created.id, "title": occurrence.title},
                    run_id,
                )

            for occurrence, mapping in plan.updates:
                payload = to_destination_payload(occurrence, subscription.id, source_kind)
                if mapping.payload_hash and mapping.payload_hash == payload.fingerprint():
                    continue
                try:
                    updated = destination.update_event(target_calendar_id, mapping.destination_event_id, payload)
                    metrics.updated += 1
                    action = "update"
                except DestinationNotFoundError:
                    logger.info(
                        "Destination event %s for %s/%s is gone; recreating",
                        mapping.destination_event_id,
                        subscription.id,
                        occurrence.id,
                    )
                    updated = destination.create_event(target_calendar_id, payload)
                    metrics.created += 1
                    action = "recreate"
                self._save_mapping(subscription.id, occurrence, updated, payload)
                self._audit(
                    subscription.id,
                    occurrence.id,
                    action,
                    {
                        "destination_event_id": updated.id,
                        "previous_destination_event_id": mapping.destination_event_id,
                        "title": occurrence.title,
                    },
                    run_id,
                )

            for mapping in plan.stale:
                removed = destination.delete_event(target_calendar_id, mapping.destination_event_id)
                self.state_store.delete_mapping(subscription.id, mapping.source_event_id)
                metrics.deleted += 1
                self._audit(
                    subscription.id,
                    mapping.source_event_id,
                    "delete",
                    {"destination_event_id": mapping.destination_event_id, "already_gone": not removed},
                    run_id,
                )

            self.state_store.set_state(subscription.id, LAST_SUCCESSFUL_SYNC_TS, serialize_datetime(self.clock()))
            self.state_store.set_state(subscription.id, LAST_RUN_STATUS, "success")
        except Exception:
            self.state_store.set_state(subscription.id, LAST_RUN_STATUS, f"failed:{serialize_datetime(self.clock())}")
            raise

        return CycleResult(
            subscription_id=subscription.id,
            source_kind=source_kind,
            target_calendar_id=target_calendar_id,
            window=window,
            metrics=metrics,
        )

    def _enabled_subscriptions(
        self, config: AppConfig, subscription_ids: list[str] | None = None
    ) -> list[SubscriptionConfig]:
        wanted = set(subscription_ids or [])
        return [
            subscription
            for subscription in config.subscriptions
            if subscription.enabled and (not wanted or subscription.id in wanted)
        ]

    def _sync_subscription(
        self,
        subscription: SubscriptionConfig,
        config: AppConfig,
        window: SyncWindow,
        destination: Destination,
        run_id: int,
    ) -> SubscriptionOutcome:
        try:
            target_calendar_id = config.target_calendar_id(subscription)
            source = self.source_factory(subscription, config, self.resolver_for(config))
            result = self.run_cycle(subscription, window, source, destination, target_calendar_id, run_id=run_id)
        except Exception as exc:
            message = _error_message(exc)
            logger.error("Sync cycle failed for %s: %s", subscription.id, message)
            logger.debug("Sync cycle traceback for %s", subscription.id, exc_info=True)
            self.state_store.set_state(subscription.id, LAST_RUN_STATUS, f"failed:{serialize_datetime(self.clock())}")
            self._audit(
                subscription.id,
                "subscription",
                "cycle_error",
                {"error": message, "traceback": traceback.format_exc(limit=5)},
                run_id,
            )
            return SubscriptionOutcome(subscription_id=subscription.id, status="error", message=message)

        metrics = result.metrics
        logger.info(
            "Synced %s: fetched=%d considered=%d created=%d updated=%d deleted=%d",
            subscription.id,
            metrics.fetched,
            metrics.considered,
            metrics.created,
            metrics.updated,
            metrics.deleted,
        )
        return SubscriptionOutcome(subscription_id=subscription.id, status="success", result=result)

    def run_once(self, trigger: str = "manual", subscription_ids: list[str] | None = None) -> SyncResult:
        started_at = _utc_now()
        run_id: int | None = None
        try:
            config = self.config_manager.load()
            subscriptions = self._enabled_subscriptions(config, subscription_ids)
            if not subscriptions:
                message = "No enabled subscriptions. Sync skipped."
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="skipped",
                    message=message,
                    duration_ms=_elapsed_ms(started_at),
                    changes_applied=0,
                    failures=0,
                )
                return SyncResult(
                    status="skipped",
                    message=message,
                    duration_ms=_elapsed_ms(started_at),
                    changes_applied=0,
                    failures=0,
                    trigger=trigger,
                )

            run_id = self.state_store.start_sync_run(trigger=trigger)
            window = self.compute_window(config)
            destination = self.destination_factory(config)
            outcomes = [
                self._sync_subscription(subscription, config, window, destination, run_id)
                for subscription in subscriptions
            ]

            failures = sum(1 for outcome in outcomes if not outcome.ok)
            changes_applied = sum(outcome.result.metrics.changes for outcome in outcomes if outcome.result)
            if failures == 0:
                status = "success"
            elif failures < len(outcomes):
                status = "partial"
            else:
                status = "error"
            message = f"{len(outcomes) - failures}/{len(outcomes)} subscriptions synced"
            duration_ms = _elapsed_ms(started_at)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                failures=failures,
            )
            return SyncResult(
                status=status,
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                failures=failures,
                trigger=trigger,
                outcomes=outcomes,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = _error_message(exc)
            logger.error("Sync run failed: %s", error_message)
            if run_id is None:
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    changes_applied=0,
                    failures=1,
                )
            else:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    changes_applied=0,
                    failures=1,
                )
            self._audit(
                "system",
                "sync",
                "run_error",
                {"trigger": trigger, "error": error_message, "traceback": traceback.format_exc(limit=5)},
                run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=0,
                failures=1,
                trigger=trigger,
            )

    def health_check(self) -> list[dict[str, Any]]:
        """Probe the destination calendars and every enabled source; never raises."""
        checks: list[dict[str, Any]] = []

        def _probe(name: str, fn: Callable[[], None]) -> None:
            try:
                fn()
            except Exception as exc:
                checks.append({"target": name, "ok": False, "message": _error_message(exc)})
                return
            checks.append({"target": name, "ok": True, "message": "ok"})

        config = self.config_manager.load()
        subscriptions = self._enabled_subscriptions(config)
        try:
            destination = self.destination_factory(config)
        except Exception as exc:
            return [{"target": "destination", "ok": False, "message": _error_message(exc)}]

        targets: list[str] = []
        for subscription in subscriptions:
            try:
                target = config.target_calendar_id(subscription)
            except Exception as exc:
                checks.append({"target": f"subscription:{subscription.id}", "ok": False, "message": str(exc)})
                continue
            if target not in targets:
                targets.append(target)
        for target in targets:
            _probe(f"destination:{target}", lambda target=target: destination.health_check(target))

        resolver = self.resolver_for(config)
        for subscription in subscriptions:
            _probe(
                f"source:{subscription.id}",
                lambda subscription=subscription: self.source_factory(subscription, config, resolver).health_check(),
            )
        return checks

    def cleanup(self, subscription_id: str | None = None) -> int:
        """Delete every app-managed destination event (optionally one subscription's) and its mappings."""
        config = self.config_manager.load()
        destination = self.destination_factory(config)
        subscriptions = [
            subscription
            for subscription in config.subscriptions
            if subscription_id is None or subscription.id == subscription_id
        ]
        targets: list[str] = []
        if config.destination.calendar_id:
            targets.append(config.destination.calendar_id)
        for subscription in subscriptions:
            if subscription.target_calendar_id and subscription.target_calendar_id not in targets:
                targets.append(subscription.target_calendar_id)

        filters = {"subscription_id": subscription_id} if subscription_id else {}
        deleted = 0
        for target in targets:
            for event in destination.list_managed_events(target, filters):
                if destination.delete_event(target, event.id):
                    deleted += 1
                owner = event.private_metadata.get("subscription_id", "")
                source_event_id = event.private_metadata.get("source_event_id", "")
                if owner and source_event_id:
                    self.state_store.delete_mapping(owner, source_event_id)
                self._audit(
                    owner or "system",
                    source_event_id or event.id,
                    "cleanup_delete",
                    {"destination_event_id": event.id, "calendar_id": target},
                    None,
                )

        for subscription in subscriptions:
            for mapping in self.state_store.list_mappings(subscription.id):
                self.state_store.delete_mapping(subscription.id, mapping.source_event_id)
        logger.info("Cleanup removed %d managed destination events", deleted)
        return deleted
