"""
Algorithm Registry — versioned algorithm definitions and their deployments.

Each algorithm has one definition, any number of immutable versions, an
optional configuration schema and a per-environment deployment history.
Deployments move pending → deploying → active | failed, and an active
deployment is superseded through ``rollback`` (→ rolled_back). History is
append-only.

Invariant: at most one deployment in {active, deploying} per
(algorithm, environment).
"""

import asyncio
import logging
import re
import time
from typing import Any

from app.orchestration.errors import ConflictError, NotFoundError, ValidationError
from app.orchestration.events import EventBus, EventType
from app.orchestration.executor import AlgorithmExecutor
from app.orchestration.models import (
    AlgorithmCategory,
    AlgorithmDefinition,
    AlgorithmPriority,
    AlgorithmVersion,
    ConfigSchema,
    Deployment,
    DeploymentStatus,
    Environment,
    ExecutionContext,
    HealthCheck,
    HealthStatus,
    PerformanceBaseline,
    utcnow,
)
from app.orchestration.store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

MAX_HEALTH_CHECKS = 100

# Smoke test latency may exceed the baseline by this factor before the
# deployment is considered degraded.
SMOKE_TEST_TOLERANCE = 2.0

_CONFIG_TYPES: dict[str, Any] = {
    "string": str,
    "number": (int, float),
    "integer": int,
    "boolean": bool,
    "object": dict,
    "array": list,
}

_BLOCKING_STATES = (DeploymentStatus.ACTIVE, DeploymentStatus.DEPLOYING)


def _check_type(value: Any, expected: str) -> bool:
    py_type = _CONFIG_TYPES.get(expected)
    if py_type is None:
        return True
    # bool is an int subclass; only "boolean" accepts it
    if isinstance(value, bool) and expected != "boolean":
        return False
    return isinstance(value, py_type)


class AlgorithmRegistry:
    """Versioned algorithm catalog with an environment deployment lifecycle."""

    def __init__(
        self,
        event_bus: EventBus,
        algorithms: KeyValueStore | None = None,
        versions: KeyValueStore | None = None,
        deployments: KeyValueStore | None = None,
        schemas: KeyValueStore | None = None,
        baselines: KeyValueStore | None = None,
        executor: AlgorithmExecutor | None = None,
        smoke_test_timeout: float = 30.0,
    ):
        self.event_bus = event_bus
        self.executor = executor
        self.smoke_test_timeout = smoke_test_timeout
        self._algorithms: KeyValueStore[AlgorithmDefinition] = algorithms or InMemoryStore()
        self._versions: KeyValueStore[list[AlgorithmVersion]] = versions or InMemoryStore()
        self._deployments: KeyValueStore[list[Deployment]] = deployments or InMemoryStore()
        self._schemas: KeyValueStore[ConfigSchema] = schemas or InMemoryStore()
        self._baselines: KeyValueStore[PerformanceBaseline] = baselines or InMemoryStore()
        self._lock = asyncio.Lock()

    # ── Registration ─────────────────────────────────────────────────────────

    async def register_algorithm(
        self,
        definition: AlgorithmDefinition,
        version: AlgorithmVersion,
        config_schema: ConfigSchema | None = None,
    ) -> AlgorithmVersion:
        self._validate_definition(definition)
        self._validate_version(definition, version)

        async with self._lock:
            versions = await self._versions.get(definition.id) or []
            if any(v.version == version.version for v in versions):
                raise ConflictError(
                    f"Version {version.version} already exists for algorithm {definition.id}",
                    algorithm_id=definition.id,
                    version=version.version,
                )
            versions.append(version)

            await self._algorithms.set(definition.id, definition)
            await self._versions.set(definition.id, versions)
            if config_schema is not None:
                await self._schemas.set(definition.id, config_schema)
            await self._baselines.set(definition.id, version.performance_baseline)

            deployments = await self._deployments.get(definition.id) or []
            deployments.append(Deployment(
                algorithm_id=definition.id,
                version=version.version,
                environment=Environment.DEVELOPMENT,
                deployed_by=version.created_by,
            ))
            await self._deployments.set(definition.id, deployments)

        logger.info(
            "Registered algorithm %s version %s", definition.id, version.version,
            extra={"algorithm_id": definition.id},
        )
        await self.event_bus.publish(
            EventType.ALGORITHM_REGISTERED,
            algorithm_id=definition.id,
            version=version.version,
            category=definition.category,
        )
        return version

    def _validate_definition(self, definition: AlgorithmDefinition) -> None:
        if not definition.id or not definition.name or not definition.version:
            raise ValidationError("Algorithm definition must include id, name, and version")
        if definition.category not in {c.value for c in AlgorithmCategory}:
            raise ValidationError(f"Invalid algorithm category: {definition.category}")
        if definition.priority not in {p.value for p in AlgorithmPriority}:
            raise ValidationError(f"Invalid algorithm priority: {definition.priority}")

    def _validate_version(self, definition: AlgorithmDefinition, version: AlgorithmVersion) -> None:
        if not version.algorithm_id or not version.version or not version.created_by:
            raise ValidationError("Algorithm version must include algorithm_id, version, and created_by")
        if version.algorithm_id != definition.id:
            raise ValidationError(
                f"Version belongs to {version.algorithm_id}, not {definition.id}",
            )
        if not SEMVER_RE.match(version.version):
            raise ValidationError(f"Invalid semantic version: {version.version}")

    # ── Lookups ──────────────────────────────────────────────────────────────

    async def get_algorithm(self, algorithm_id: str, version: str | None = None) -> AlgorithmVersion:
        """A specific version, or the active one when *version* is None."""
        if version is None:
            return await self.get_active_version(algorithm_id)
        return await self._require_version(algorithm_id, version)

    async def get_definition(self, algorithm_id: str) -> AlgorithmDefinition:
        definition = await self._algorithms.get(algorithm_id)
        if definition is None:
            raise NotFoundError(f"Algorithm {algorithm_id} not found")
        return definition

    async def list_algorithms(self) -> list[AlgorithmDefinition]:
        return await self._algorithms.values()

    async def get_versions(self, algorithm_id: str) -> list[AlgorithmVersion]:
        await self.get_definition(algorithm_id)
        return list(await self._versions.get(algorithm_id) or [])

    async def get_active_version(self, algorithm_id: str) -> AlgorithmVersion:
        versions = await self._versions.get(algorithm_id) or []
        active = [v for v in versions if v.is_active]
        default = next((v for v in active if v.is_default), None)
        if default is not None:
            return default
        if active:
            return active[-1]
        raise NotFoundError(f"No active version for algorithm {algorithm_id}")

    async def _require_version(self, algorithm_id: str, version: str) -> AlgorithmVersion:
        versions = await self._versions.get(algorithm_id) or []
        found = next((v for v in versions if v.version == version), None)
        if found is None:
            raise NotFoundError(
                f"Version {version} not found for algorithm {algorithm_id}",
                algorithm_id=algorithm_id,
                version=version,
            )
        return found

    async def get_algorithms_by_category(self, category: str) -> list[AlgorithmDefinition]:
        return [a for a in await self._algorithms.values() if a.category == category]

    async def search_algorithms(self, query: str) -> list[AlgorithmDefinition]:
        term = query.lower()
        return [
            a for a in await self._algorithms.values()
            if term in a.name.lower()
            or term in a.description.lower()
            or any(term in tag.lower() for tag in a.tags)
        ]

    async def get_statistics(self) -> dict:
        algorithms = await self._algorithms.values()
        by_category: dict[str, int] = {}
        for a in algorithms:
            by_category[a.category] = by_category.get(a.category, 0) + 1
        all_deployments = [d for ds in await self._deployments.values() for d in ds]
        return {
            "total_algorithms": len(algorithms),
            "total_versions": sum(len(vs) for vs in await self._versions.values()),
            "total_deployments": len(all_deployments),
            "active_deployments": sum(1 for d in all_deployments if d.status == DeploymentStatus.ACTIVE),
            "algorithms_by_category": by_category,
        }

    # ── Configuration & baselines ────────────────────────────────────────────

    async def get_configuration_schema(self, algorithm_id: str) -> ConfigSchema | None:
        return await self._schemas.get(algorithm_id)

    async def validate_configuration(self, algorithm_id: str, configuration: dict) -> list[str]:
        """Return a list of problems; empty when the configuration is valid."""
        schema = await self._schemas.get(algorithm_id)
        if schema is None:
            return []
        errors = []
        for name in schema.required:
            if name not in configuration:
                errors.append(f"Missing required property: {name}")
        for name, prop in schema.properties.items():
            if name in configuration and not _check_type(configuration[name], prop.type):
                errors.append(f"Property {name} must be of type {prop.type}")
        return errors

    async def get_performance_baseline(self, algorithm_id: str) -> PerformanceBaseline | None:
        return await self._baselines.get(algorithm_id)

    async def update_performance_baseline(self, algorithm_id: str, baseline: PerformanceBaseline) -> None:
        await self.get_definition(algorithm_id)
        await self._baselines.set(algorithm_id, baseline)
        logger.info(
            "Performance baseline of %s set to %.1fms, %.1f%% success, %.1f/min",
            algorithm_id, baseline.average_execution_time, baseline.success_rate * 100, baseline.throughput,
            extra={"algorithm_id": algorithm_id},
        )

    # ── Deployments ──────────────────────────────────────────────────────────

    async def deploy(
        self,
        algorithm_id: str,
        version: str,
        environment: Environment,
        actor: str,
    ) -> Deployment:
        async with self._lock:
            target = await self._require_version(algorithm_id, version)
            deployment = await self._begin_deployment(target, environment, actor)
        return await self._finish_deployment(deployment, target)

    async def rollback(
        self,
        algorithm_id: str,
        environment: Environment,
        to_version: str,
        actor: str,
    ) -> Deployment:
        async with self._lock:
            deployments = await self._deployments.get(algorithm_id) or []
            current = next(
                (d for d in reversed(deployments)
                 if d.environment == environment and d.status == DeploymentStatus.ACTIVE),
                None,
            )
            if current is None:
                raise NotFoundError(
                    f"No active deployment for {algorithm_id} in {environment.value}",
                )
            target = await self._require_version(algorithm_id, to_version)

            current.status = DeploymentStatus.ROLLED_BACK
            current.status_reason = f"Rolled back to {to_version} by {actor}"
            await self._deployments.set(algorithm_id, deployments)
            deployment = await self._begin_deployment(target, environment, actor, rollback_version=current.version)

        logger.info(
            "Rolling back %s in %s from %s to %s",
            algorithm_id, environment.value, current.version, to_version,
            extra={"algorithm_id": algorithm_id},
        )
        await self.event_bus.publish(
            EventType.DEPLOYMENT_ROLLED_BACK,
            algorithm_id=algorithm_id,
            environment=environment.value,
            from_version=current.version,
            to_version=to_version,
            actor=actor,
        )
        return await self._finish_deployment(deployment, target)

    async def _begin_deployment(
        self,
        target: AlgorithmVersion,
        environment: Environment,
        actor: str,
        rollback_version: str | None = None,
    ) -> Deployment:
        # Caller holds self._lock.
        deployments = await self._deployments.get(target.algorithm_id) or []
        blocking = next(
            (d for d in deployments if d.environment == environment and d.status in _BLOCKING_STATES),
            None,
        )
        if blocking is not None:
            raise ConflictError(
                f"Algorithm {target.algorithm_id} already has a {blocking.status.value} deployment "
                f"({blocking.version}) in {environment.value}",
                deployment_id=blocking.id,
            )

        deployment = Deployment(
            algorithm_id=target.algorithm_id,
            version=target.version,
            environment=environment,
            deployed_by=actor,
            rollback_version=rollback_version,
        )
        deployments.append(deployment)
        deployment.status = DeploymentStatus.DEPLOYING
        await self._deployments.set(target.algorithm_id, deployments)
        await self.event_bus.publish(
            EventType.DEPLOYMENT_STARTED,
            algorithm_id=target.algorithm_id,
            version=target.version,
            environment=environment.value,
            deployment_id=deployment.id,
        )
        return deployment

    async def _finish_deployment(self, deployment: Deployment, target: AlgorithmVersion) -> Deployment:
        checks = list(await asyncio.gather(
            self._check_dependencies(target),
            self._check_configuration(target),
            self._check_performance(target, deployment),
        ))
        healthy = all(c.status == HealthStatus.HEALTHY for c in checks)

        async with self._lock:
            deployments = await self._deployments.get(deployment.algorithm_id) or []
            stored = next(d for d in deployments if d.id == deployment.id)
            stored.health_checks = (stored.health_checks + checks)[-MAX_HEALTH_CHECKS:]
            stored.status = DeploymentStatus.ACTIVE if healthy else DeploymentStatus.FAILED
            if not healthy:
                stored.status_reason = "; ".join(
                    f"{c.name}: {c.message}" for c in checks if c.status != HealthStatus.HEALTHY
                )
            await self._deployments.set(deployment.algorithm_id, deployments)

        if healthy:
            logger.info(
                "Deployed %s %s to %s",
                stored.algorithm_id, stored.version, stored.environment.value,
                extra={"algorithm_id": stored.algorithm_id},
            )
        else:
            logger.warning(
                "Deployment of %s %s to %s failed: %s",
                stored.algorithm_id, stored.version, stored.environment.value, stored.status_reason,
                extra={"algorithm_id": stored.algorithm_id},
            )
        await self.event_bus.publish(
            EventType.DEPLOYMENT_SUCCEEDED if healthy else EventType.DEPLOYMENT_FAILED,
            algorithm_id=stored.algorithm_id,
            version=stored.version,
            environment=stored.environment.value,
            deployment_id=stored.id,
        )
        return stored

    # ── Health checks ────────────────────────────────────────────────────────

    async def _check_dependencies(self, target: AlgorithmVersion) -> HealthCheck:
        start = time.perf_counter()
        missing = []
        for dep in target.dependencies:
            if not dep.required:
                continue
            versions = await self._versions.get(dep.algorithm_id) or []
            if not any(v.version == dep.version for v in versions):
                missing.append(f"{dep.algorithm_id}@{dep.version}")
        elapsed = (time.perf_counter() - start) * 1000
        if missing:
            return HealthCheck(
                name="Dependency Check",
                status=HealthStatus.UNHEALTHY,
                message=f"Unresolved dependencies: {', '.join(missing)}",
                response_time=elapsed,
            )
        return HealthCheck(
            name="Dependency Check",
            status=HealthStatus.HEALTHY,
            message="All dependencies resolved",
            response_time=elapsed,
        )

    async def _check_configuration(self, target: AlgorithmVersion) -> HealthCheck:
        start = time.perf_counter()
        errors = await self.validate_configuration(target.algorithm_id, target.configuration)
        elapsed = (time.perf_counter() - start) * 1000
        if errors:
            return HealthCheck(
                name="Configuration Validation",
                status=HealthStatus.UNHEALTHY,
                message="; ".join(errors),
                response_time=elapsed,
            )
        return HealthCheck(
            name="Configuration Validation",
            status=HealthStatus.HEALTHY,
            message="Configuration is valid",
            response_time=elapsed,
        )

    async def _check_performance(self, target: AlgorithmVersion, deployment: Deployment) -> HealthCheck:
        if self.executor is None or "smoke_test_input" not in target.configuration:
            return HealthCheck(
                name="Performance Test",
                status=HealthStatus.HEALTHY,
                message="Smoke test skipped (no smoke_test_input configured)",
            )

        context = ExecutionContext(
            user_id=deployment.deployed_by,
            version=target.version,
            configuration=target.configuration,
            metadata={"deployment_id": deployment.id, "smoke_test": True},
        )
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.executor.execute(target.algorithm_id, target.configuration["smoke_test_input"], context),
                timeout=self.smoke_test_timeout,
            )
        except asyncio.TimeoutError:
            return HealthCheck(
                name="Performance Test",
                status=HealthStatus.UNHEALTHY,
                message=f"Smoke test timed out after {self.smoke_test_timeout:g}s",
                response_time=(time.perf_counter() - start) * 1000,
            )
        elapsed = (time.perf_counter() - start) * 1000

        if not result.success:
            return HealthCheck(
                name="Performance Test",
                status=HealthStatus.UNHEALTHY,
                message=f"Smoke test failed: {result.error}",
                response_time=elapsed,
            )
        baseline = target.performance_baseline.average_execution_time
        if baseline > 0 and elapsed > baseline * SMOKE_TEST_TOLERANCE:
            return HealthCheck(
                name="Performance Test",
                status=HealthStatus.DEGRADED,
                message=f"Smoke test took {elapsed:.0f}ms against a {baseline:.0f}ms baseline",
                response_time=elapsed,
            )
        return HealthCheck(
            name="Performance Test",
            status=HealthStatus.HEALTHY,
            message="Performance within acceptable limits",
            response_time=elapsed,
        )

    # ── Deployment queries & upkeep ──────────────────────────────────────────

    async def list_deployments(self, algorithm_id: str) -> list[Deployment]:
        return list(await self._deployments.get(algorithm_id) or [])

    async def get_deployment(self, algorithm_id: str, environment: Environment) -> Deployment:
        """The active deployment for the environment, else the most recent one."""
        in_env = [d for d in await self.list_deployments(algorithm_id) if d.environment == environment]
        if not in_env:
            raise NotFoundError(f"No deployment of {algorithm_id} in {environment.value}")
        active = [d for d in in_env if d.status == DeploymentStatus.ACTIVE]
        return active[-1] if active else in_env[-1]

    async def add_health_check(self, algorithm_id: str, environment: Environment, check: HealthCheck) -> None:
        async with self._lock:
            deployments = await self._deployments.get(algorithm_id) or []
            in_env = [d for d in deployments if d.environment == environment]
            if not in_env:
                raise NotFoundError(f"No deployment of {algorithm_id} in {environment.value}")
            active = [d for d in in_env if d.status == DeploymentStatus.ACTIVE]
            target = active[-1] if active else in_env[-1]
            target.health_checks = (target.health_checks + [check])[-MAX_HEALTH_CHECKS:]
            await self._deployments.set(algorithm_id, deployments)

    async def update_deployment_metrics(
        self,
        algorithm_id: str,
        environment: Environment,
        success: bool,
        response_time: float,
    ) -> None:
        """Fold one request into the active deployment's rolling metrics. No-op without one."""
        async with self._lock:
            deployments = await self._deployments.get(algorithm_id)
            if not deployments:
                return
            active = next(
                (d for d in reversed(deployments)
                 if d.environment == environment and d.status == DeploymentStatus.ACTIVE),
                None,
            )
            if active is None:
                return
            m = active.metrics
            m.total_requests += 1
            if success:
                m.successful_requests += 1
            else:
                m.failed_requests += 1
            m.average_response_time += (response_time - m.average_response_time) / m.total_requests
            m.error_rate = m.failed_requests / m.total_requests
            m.last_updated = utcnow()
            await self._deployments.set(algorithm_id, deployments)
