"""Tests del pipeline de ingesta de punta a punta.

Cubre resolución de identidad, escritura + estado, duplicados, timeouts,
reintentos acotados y el orden por dispositivo.

Ejecutar:
    pytest tests/test_ingest_pipeline.py -v
"""

import asyncio
import json
import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeTransport, at, thresholds
from telemetry_ingest.domain import IngestOutcome, SensorStatus, SensorType
from telemetry_ingest.errors import ConfigurationError, PersistenceError
from telemetry_ingest.ingest import TelemetryIngestService, shard_for
from telemetry_ingest.ingest.resilience import DeduplicationCache

DEVICE = "SG-2024-000123"
TOPIC = f"sensors/{DEVICE}/data"


def payload(**fields) -> bytes:
    return json.dumps(fields).encode()


@pytest.fixture
def service(repository, resolver, pipeline_settings) -> TelemetryIngestService:
    return TelemetryIngestService(repository, settings=pipeline_settings, resolver=resolver)


class FlakyRepository:
    """Delegado que falla las primeras ``failures`` escrituras."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def find_active_by_physical_id(self, physical_id):
        return self.inner.find_active_by_physical_id(physical_id)

    def apply_reading(self, write, build_alerts=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise PersistenceError("database is unavailable")
        return self.inner.apply_reading(write, build_alerts)


# =============================================================================
# ESCENARIO DE PUNTA A PUNTA
# =============================================================================

class TestEndToEndScenario:
    """Registro → warning → critical para SG-2024-000123."""

    @pytest.mark.asyncio
    async def test_warning_then_critical(self, service, repository, provision):
        sensor = provision(
            DEVICE,
            SensorType.TEMPERATURE,
            thresholds(warning=(None, 30), critical=(None, 40)),
            user_id="owner-1",
        )

        first = await service.handle_message(TOPIC, payload(value=35, battery=88), at(0))

        assert first.outcome == IngestOutcome.ACCEPTED
        assert first.status == SensorStatus.WARNING
        [stored] = repository.list_readings(sensor.sensor_id)
        assert stored["value"] == 35
        assert stored["battery_level"] == 88
        assert stored["unit"] == "°C"
        row = repository.get_sensor(sensor.sensor_id)
        assert row["current_value"] == 35
        assert row["status"] == "warning"

        second = await service.handle_message(TOPIC, payload(value=42, battery=87), at(60))

        assert second.status == SensorStatus.CRITICAL
        row = repository.get_sensor(sensor.sensor_id)
        assert row["status"] == "critical"
        assert row["current_value"] == 42
        assert row["battery_level"] == 87
        assert len(repository.list_readings(sensor.sensor_id)) == 2

        alerts = repository.list_alerts("owner-1")
        assert [a["alert_type"] for a in alerts] == ["critical", "warning"]
        assert "above upper limit 40°C" in alerts[0]["message"]


# =============================================================================
# RESOLUCIÓN DE IDENTIDAD
# =============================================================================

class TestIdentityResolution:
    """0 registros → nada se escribe; 1 registro → una lectura."""

    @pytest.mark.asyncio
    async def test_unregistered_device_writes_nothing(self, service, repository):
        with patch.object(repository, "apply_reading", wraps=repository.apply_reading) as spy:
            result = await service.handle_message("sensors/UNKNOWN/data", payload(value=1), at(0))

        assert result.outcome == IngestOutcome.UNRESOLVED
        spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_match_writes_once(self, service, repository, provision):
        sensor = provision(DEVICE)

        with patch.object(repository, "apply_reading", wraps=repository.apply_reading) as spy:
            result = await service.handle_message(TOPIC, payload(value=20), at(0))

        assert result.outcome == IngestOutcome.ACCEPTED
        assert result.sensor_id == sensor.sensor_id
        spy.assert_called_once()
        assert len(repository.list_readings(sensor.sensor_id)) == 1

    @pytest.mark.asyncio
    async def test_malformed_messages_write_nothing(self, service, repository, provision):
        provision(DEVICE)

        with patch.object(repository, "apply_reading", wraps=repository.apply_reading) as spy:
            r1 = await service.handle_message("sensors/X/status", payload(value=1), at(0))
            r2 = await service.handle_message(TOPIC, payload(battery=90), at(0))
            r3 = await service.handle_message(TOPIC, b"not json", at(0))

        assert r1.outcome == IngestOutcome.DROPPED_TOPIC
        assert r2.outcome == IngestOutcome.DROPPED_PAYLOAD
        assert r3.outcome == IngestOutcome.DROPPED_PAYLOAD
        spy.assert_not_called()
        assert service.outcomes["dropped_payload"] == 2

    @pytest.mark.asyncio
    async def test_resolver_cache_avoids_repeated_lookups(self, service, repository, provision):
        provision(DEVICE)

        with patch.object(
            repository, "find_active_by_physical_id", wraps=repository.find_active_by_physical_id
        ) as spy:
            await service.handle_message(TOPIC, payload(value=1), at(0))
            await service.handle_message(TOPIC, payload(value=2), at(1))

        assert spy.call_count == 1
        assert service.resolver.stats["cache_hits"] == 1


# =============================================================================
# DUPLICADOS
# =============================================================================

class TestDuplicateDelivery:
    """Sin dedup: dos filas de historial, mismo snapshot final."""

    @pytest.mark.asyncio
    async def test_identical_message_twice(self, service, repository, provision):
        sensor = provision(DEVICE, config=thresholds(warning=(None, 30)))
        body = payload(value=35, battery=88)

        await service.handle_message(TOPIC, body, at(0))
        snapshot_once = repository.get_sensor(sensor.sensor_id)
        await service.handle_message(TOPIC, body, at(1))
        snapshot_twice = repository.get_sensor(sensor.sensor_id)

        readings = repository.list_readings(sensor.sensor_id)
        assert len(readings) == 2
        assert [r["value"] for r in readings] == [35, 35]
        for field in ("current_value", "battery_level", "status"):
            assert snapshot_twice[field] == snapshot_once[field]

    @pytest.mark.asyncio
    async def test_dedup_enabled_drops_repeated_msg_id(self, repository, resolver, pipeline_settings, provision):
        sensor = provision(DEVICE)
        service = TelemetryIngestService(
            repository,
            settings=pipeline_settings,
            resolver=resolver,
            deduplicator=DeduplicationCache(ttl_seconds=60),
        )
        body = payload(value=35, msgId="m-1")

        first = await service.handle_message(TOPIC, body, at(0))
        second = await service.handle_message(TOPIC, body, at(1))
        other = await service.handle_message(TOPIC, payload(value=35, msgId="m-2"), at(2))

        assert first.outcome == IngestOutcome.ACCEPTED
        assert second.outcome == IngestOutcome.DUPLICATE
        assert other.outcome == IngestOutcome.ACCEPTED
        assert len(repository.list_readings(sensor.sensor_id)) == 2


# =============================================================================
# ORDEN Y SNAPSHOT
# =============================================================================

class TestOrdering:
    @pytest.mark.asyncio
    async def test_stale_reading_keeps_newer_snapshot(self, service, repository, provision):
        sensor = provision(DEVICE, config=thresholds(warning=(None, 30)))

        await service.handle_message(TOPIC, payload(value=35), at(10))
        late = await service.handle_message(TOPIC, payload(value=20), at(5))

        assert late.outcome == IngestOutcome.STALE
        row = repository.get_sensor(sensor.sensor_id)
        assert row["current_value"] == 35
        assert row["status"] == "warning"
        assert len(repository.list_readings(sensor.sensor_id)) == 2

    @pytest.mark.asyncio
    async def test_same_device_processed_in_arrival_order(self, service, repository, provision):
        sensor = provision(DEVICE)
        await service.start()
        try:
            for i in range(20):
                assert service.submit(TOPIC, payload(value=i), at(i)) is True
            await asyncio.wait_for(service.drain(), timeout=10)
        finally:
            await service.stop()

        readings = repository.list_readings(sensor.sensor_id, limit=100)
        assert [r["value"] for r in reversed(readings)] == list(range(20))
        assert repository.get_sensor(sensor.sensor_id)["current_value"] == 19

    def test_shard_is_stable_per_device(self):
        assert shard_for(DEVICE, 4) == shard_for(DEVICE, 4)
        assert 0 <= shard_for("other", 4) < 4

    @pytest.mark.asyncio
    async def test_full_shard_queue_drops(self, repository, resolver, pipeline_settings, provision):
        provision(DEVICE)
        settings = replace(pipeline_settings, num_workers=1, queue_size=1)
        service = TelemetryIngestService(repository, settings=settings, resolver=resolver)
        await service.start()
        try:
            accepted = [service.submit(TOPIC, payload(value=i), at(i)) for i in range(3)]
            await service.drain()
        finally:
            await service.stop()

        assert accepted == [True, False, False]
        assert service.outcomes["dropped_backpressure"] == 2
        assert service.outcomes["accepted"] == 1


# =============================================================================
# TIMEOUT Y REINTENTOS
# =============================================================================

class TestStoreFailures:
    """Timeout → drop; excepción → cola de reintentos acotada."""

    @pytest.mark.asyncio
    async def test_timeout_drops_without_retry(self, pipeline_settings):
        slow = MagicMock()
        slow.find_active_by_physical_id.side_effect = lambda _id: time.sleep(0.5) or []
        settings = replace(pipeline_settings, store_timeout_seconds=0.05)
        service = TelemetryIngestService(slow, settings=settings)

        result = await service.handle_message(TOPIC, payload(value=1), at(0))

        assert result.outcome == IngestOutcome.TIMEOUT
        slow.apply_reading.assert_not_called()
        assert service.outcomes["retry_scheduled"] == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, repository, pipeline_settings, provision):
        sensor = provision(DEVICE)
        flaky = FlakyRepository(repository, failures=1)
        hook = MagicMock()
        service = TelemetryIngestService(flaky, settings=pipeline_settings, on_persistence_failure=hook)
        await service.start()
        try:
            result = await service.handle_message(TOPIC, payload(value=5), at(0))
            await asyncio.wait_for(service.drain(), timeout=5)
        finally:
            await service.stop()

        assert result.outcome == IngestOutcome.RETRY_SCHEDULED
        assert service.outcomes["accepted"] == 1
        assert len(repository.list_readings(sensor.sensor_id)) == 1
        hook.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausted_retries_invoke_failure_hook(self, repository, pipeline_settings, provision):
        provision(DEVICE)
        flaky = FlakyRepository(repository, failures=100)
        hook = MagicMock()
        service = TelemetryIngestService(flaky, settings=pipeline_settings, on_persistence_failure=hook)
        await service.start()
        try:
            await service.handle_message(TOPIC, payload(value=5), at(0))
            await asyncio.wait_for(service.drain(), timeout=5)
        finally:
            await service.stop()

        assert flaky.calls == pipeline_settings.retry_max_attempts
        assert service.outcomes["failed"] == 1
        hook.assert_called_once()
        message, error = hook.call_args[0]
        assert message.device_id == DEVICE
        assert "database is unavailable" in error

    @pytest.mark.asyncio
    async def test_retry_queue_overflow_counts_as_exhausted(self, repository, pipeline_settings, provision):
        for i in range(3):
            provision(f"DEV-{i}")
        flaky = FlakyRepository(repository, failures=100)
        hook = MagicMock()
        settings = replace(pipeline_settings, retry_queue_size=1, retry_base_delay=5.0, retry_max_delay=5.0)
        service = TelemetryIngestService(flaky, settings=settings, on_persistence_failure=hook)
        await service.start()
        try:
            results = [
                await service.handle_message(f"sensors/DEV-{i}/data", payload(value=i), at(i))
                for i in range(3)
            ]
        finally:
            await service.stop(drain_timeout=0)

        assert [r.outcome for r in results] == [
            IngestOutcome.RETRY_SCHEDULED,
            IngestOutcome.RETRY_SCHEDULED,
            IngestOutcome.FAILED,
        ]
        hook.assert_called_once()

    @pytest.mark.asyncio
    async def test_failure_before_start_goes_straight_to_hook(self, repository, pipeline_settings, provision):
        provision(DEVICE)
        hook = MagicMock()
        service = TelemetryIngestService(
            FlakyRepository(repository, failures=1),
            settings=pipeline_settings,
            on_persistence_failure=hook,
        )

        result = await service.handle_message(TOPIC, payload(value=1), at(0))

        assert result.outcome == IngestOutcome.FAILED
        hook.assert_called_once()

    @pytest.mark.asyncio
    async def test_hook_error_does_not_escape(self, repository, pipeline_settings, provision):
        provision(DEVICE)
        service = TelemetryIngestService(
            FlakyRepository(repository, failures=1),
            settings=pipeline_settings,
            on_persistence_failure=MagicMock(side_effect=RuntimeError("hook down")),
        )

        result = await service.handle_message(TOPIC, payload(value=1), at(0))

        assert result.outcome == IngestOutcome.FAILED


# =============================================================================
# TRANSPORTE
# =============================================================================

class TestTransportLifecycle:
    @pytest.mark.asyncio
    async def test_messages_from_transport_thread(self, repository, resolver, pipeline_settings, provision):
        sensor = provision(DEVICE)
        transport = FakeTransport()
        service = TelemetryIngestService(
            repository, transport, pipeline_settings, resolver=resolver
        )
        await service.start()
        try:
            assert transport.started is True
            thread = threading.Thread(
                target=transport.deliver, args=(TOPIC, payload(value=12.5), at(0))
            )
            thread.start()
            thread.join()
            await asyncio.sleep(0.05)
            await asyncio.wait_for(service.drain(), timeout=5)
        finally:
            await service.stop()

        assert transport.stopped is True
        assert repository.get_sensor(sensor.sensor_id)["current_value"] == 12.5

    @pytest.mark.asyncio
    async def test_transport_configuration_error_propagates(self, repository, pipeline_settings):
        transport = FakeTransport(fail_with=ConfigurationError("bad credentials"))
        service = TelemetryIngestService(repository, transport, pipeline_settings)

        with pytest.raises(ConfigurationError):
            await service.start()

        assert service.is_running is False

    @pytest.mark.asyncio
    async def test_health_reflects_transport(self, repository, pipeline_settings):
        transport = FakeTransport()
        service = TelemetryIngestService(repository, transport, pipeline_settings)
        await service.start()
        try:
            assert service.health_check()["healthy"] is True
            transport._connected = False
            assert service.health_check()["healthy"] is False
            assert service.stats["transport"]["connected"] is False
        finally:
            await service.stop()
