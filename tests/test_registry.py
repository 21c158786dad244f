"""Tests de registro/liberación y exclusividad de dueño.

Ejecutar:
    pytest tests/test_registry.py -v
"""

import json

import pytest

from conftest import at, thresholds
from telemetry_ingest.domain import IngestOutcome, SensorType
from telemetry_ingest.errors import SensorAlreadyRegistered
from telemetry_ingest.ingest import SensorResolver, TelemetryIngestService

DEVICE = "SG-2024-000777"
TOPIC = f"sensors/{DEVICE}/data"


@pytest.fixture
def service(repository, resolver, pipeline_settings) -> TelemetryIngestService:
    return TelemetryIngestService(repository, settings=pipeline_settings, resolver=resolver)


class TestOwnershipExclusivity:
    """Liberado → nadie lo resuelve; re-registrado → resuelve al dueño nuevo."""

    @pytest.mark.asyncio
    async def test_release_then_reregister(self, service, repository, registry, provision):
        original = provision(DEVICE, user_id="account-a")
        first = await service.handle_message(TOPIC, json.dumps({"value": 1}), at(0))
        assert first.sensor_id == original.sensor_id

        registry.release_sensor("account-a", original.sensor_id)

        # El caché del resolver se invalidó: no sigue escribiendo al dueño viejo
        orphan = await service.handle_message(TOPIC, json.dumps({"value": 2}), at(10))
        assert orphan.outcome == IngestOutcome.UNRESOLVED
        assert repository.find_active_by_physical_id(DEVICE) == []

        registration = registry.register_sensor("account-b", DEVICE, "Cold room")
        adopted = await service.handle_message(TOPIC, json.dumps({"value": 3}), at(20))

        assert adopted.outcome == IngestOutcome.ACCEPTED
        assert adopted.sensor_id == registration.sensor.sensor_id
        assert adopted.sensor_id != original.sensor_id
        readings = repository.list_readings(registration.sensor.sensor_id)
        assert [r["value"] for r in readings] == [3]

        history = registry.ownership_history(DEVICE)
        assert [h["user_id"] for h in history] == ["account-a"]

    def test_second_account_cannot_claim_owned_device(self, registry, provision):
        provision(DEVICE, user_id="account-a")

        with pytest.raises(SensorAlreadyRegistered):
            registry.register_sensor("account-b", DEVICE, "Stolen")

    @pytest.mark.asyncio
    async def test_threshold_update_takes_effect_immediately(self, service, registry, provision):
        sensor = provision(DEVICE, config=thresholds(warning=(None, 30)), user_id="account-a")
        ok = await service.handle_message(TOPIC, json.dumps({"value": 25}), at(0))

        registry.update_thresholds("account-a", sensor.sensor_id, thresholds(warning=(None, 20)))
        warned = await service.handle_message(TOPIC, json.dumps({"value": 25}), at(1))

        assert ok.status.value == "ok"
        assert warned.status.value == "warning"

    def test_inconsistent_thresholds_reported_not_rejected(self, repository, registry):
        repository.add_available_sensor(DEVICE, SensorType.TEMPERATURE)

        registration = registry.register_sensor(
            "account-a",
            DEVICE,
            "Freezer",
            thresholds(warning=(None, 30), critical=(None, 25)),
        )

        assert registration.sensor.sensor_id > 0
        assert len(registration.threshold_warnings) == 1


class LookupHookRepository:
    """Envuelve el repositorio y corre ``on_lookup`` dentro del primer lookup."""

    def __init__(self, inner, on_lookup):
        self._inner = inner
        self._on_lookup = on_lookup

    def find_active_by_physical_id(self, physical_id):
        matches = self._inner.find_active_by_physical_id(physical_id)
        if self._on_lookup is not None:
            hook, self._on_lookup = self._on_lookup, None
            hook()
        return matches

    def apply_reading(self, write, build_alerts=None):
        return self._inner.apply_reading(write, build_alerts)


class TestStaleOwnershipReferences:
    """Un cambio de dueño nunca deja escribir con la referencia anterior."""

    @pytest.mark.asyncio
    async def test_cached_reference_does_not_write_to_new_owner(self, service, repository, provision):
        original = provision(DEVICE, config=thresholds(warning=(None, 30)), user_id="account-a")
        first = await service.handle_message(TOPIC, json.dumps({"value": 1}), at(0))
        assert first.outcome == IngestOutcome.ACCEPTED

        # Cambio de dueño directo en el store: el caché del resolver no se entera
        repository.release_sensor(user_id="account-a", sensor_id=original.sensor_id, now=at(5))
        adopted = repository.register_sensor(
            user_id="account-b",
            physical_id=DEVICE,
            name="Cold room",
            thresholds=thresholds(),
            now=at(6),
        )

        stale = await service.handle_message(TOPIC, json.dumps({"value": 35}), at(10))

        assert stale.outcome == IngestOutcome.UNRESOLVED
        assert repository.list_readings(adopted.sensor_id) == []
        assert repository.list_alerts("account-b") == []

        fresh = await service.handle_message(TOPIC, json.dumps({"value": 35}), at(20))

        assert fresh.outcome == IngestOutcome.ACCEPTED
        assert fresh.sensor_id == adopted.sensor_id
        assert fresh.status.value == "ok"
        assert repository.list_alerts("account-b") == []

    def test_release_during_lookup_is_not_cached(self, repository, provision):
        sensor = provision(DEVICE, user_id="account-a")
        resolver = None

        def release_and_invalidate():
            repository.release_sensor(user_id="account-a", sensor_id=sensor.sensor_id, now=at(5))
            resolver.invalidate(DEVICE)

        resolver = SensorResolver(LookupHookRepository(repository, release_and_invalidate))

        first = resolver.resolve(DEVICE)
        second = resolver.resolve(DEVICE)

        assert first.sensor_id == sensor.sensor_id
        assert second is None
        assert resolver.stats["cache_size"] == 0
