import threading

import pytest
from structlog.testing import capture_logs

from dockstack.MANAGERS.service_orchestrator import ServiceOrchestrator
from dockstack.MODELS.engine_settings import EngineSettings
from dockstack.MODELS.errors import CycleDetected, OperationCancelled, PartialFailure, ProvisioningError
from dockstack.MODELS.manifest import Manifest
from dockstack.MODELS.run_state import ServiceState
from dockstack.MODELS.service_definition import Dependency, ServiceDefinition
from dockstack.PARSERS.compose_parser import ComposeParser
from dockstack.RUNTIME.in_memory import InMemoryRuntime

STACK = """
services:
  mongodb:
    image: mongo:6
    volumes:
      - data:/data/db
      - /data/configdb
  backend:
    image: acme/backend:1.0
    depends_on: [mongodb]
    ports: ["3000:3000"]
  frontend:
    image: acme/frontend:1.0
    depends_on: [backend]
    ports: ["8080:80"]
volumes:
  data:
"""

FAST = EngineSettings(start_timeout=1, health_timeout=1, poll_interval=0.01, grace_period=1, level_timeout=10)


def load(tmp_path, content=STACK):
    return ComposeParser(context={}, project_name="shop").parse_from_string(content, base_dir=str(tmp_path))


def orchestrator_for(tmp_path, runtime=None, content=STACK):
    runtime = runtime or InMemoryRuntime()
    return ServiceOrchestrator(load(tmp_path, content), runtime, FAST), runtime


def test_three_level_up(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)

    states = orchestrator.up(detached=True)

    assert orchestrator.levels == [['mongodb'], ['backend'], ['frontend']]
    assert orchestrator.last_startup_order == [['mongodb'], ['backend'], ['frontend']]
    assert all(state == ServiceState.RUNNING for state in states.values())
    created = [target for _, target in runtime.operations("create_container")]
    assert created == ['shop_mongodb_1', 'shop_backend_1', 'shop_frontend_1']
    assert {'mongo:6', 'acme/backend:1.0', 'acme/frontend:1.0'} <= runtime.images


def test_images_resolve_before_resources_and_containers(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)
    orchestrator.up()
    kinds = [op for op, _ in runtime.operations()]
    assert kinds.index("create_network") > max(i for i, op in enumerate(kinds) if op == "pull_image")
    assert kinds.index("create_container") > kinds.index("create_volume")


def test_creation_error_stops_progression(tmp_path):
    runtime = InMemoryRuntime()
    runtime.inject_failure("create_container", "shop_backend_1")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)

    with pytest.raises(PartialFailure) as exc:
        orchestrator.up()

    assert exc.value.services == ['backend']
    assert exc.value.failures[0].state == 'pending'
    assert exc.value.skipped == ['frontend']
    assert orchestrator.run_state.state('mongodb') == ServiceState.RUNNING
    assert orchestrator.run_state.state('backend') == ServiceState.FAILED
    assert orchestrator.run_state.state('frontend') == ServiceState.PENDING
    assert runtime.container_by_name('shop_frontend_1') is None


def test_undecodable_env_file_is_reported_as_partial_failure(tmp_path):
    (tmp_path / "api.env").write_bytes(b"A=\xff\xfe\n")
    content = """
services:
  api:
    image: acme/api:1.0
    env_file: api.env
    volumes:
      - /cache
"""
    orchestrator, runtime = orchestrator_for(tmp_path, content=content)

    with pytest.raises(PartialFailure) as exc:
        orchestrator.up()

    assert exc.value.services == ['api']
    assert orchestrator.run_state.state('api') == ServiceState.FAILED
    assert not any("_anon_" in name for name in runtime.volumes)


def test_sibling_failure_leaves_independent_service_running(tmp_path):
    content = """
services:
  cache:
    image: redis
  queue:
    image: rabbitmq
"""
    runtime = InMemoryRuntime()
    runtime.crash_on_start("shop_queue_1", exit_code=2)
    orchestrator, runtime = orchestrator_for(tmp_path, runtime, content)

    with pytest.raises(PartialFailure) as exc:
        orchestrator.up()

    assert exc.value.services == ['queue']
    assert exc.value.failures[0].state == 'starting'
    assert orchestrator.run_state.state('cache') == ServiceState.RUNNING


def test_cycle_has_no_side_effects():
    manifest = Manifest(project_name="shop", services={
        'backend': ServiceDefinition(name='backend', image='api', depends_on=[Dependency(service='frontend')]),
        'frontend': ServiceDefinition(name='frontend', image='web', depends_on=[Dependency(service='backend')]),
    })
    runtime = InMemoryRuntime()

    with pytest.raises(CycleDetected) as exc:
        ServiceOrchestrator(manifest, runtime, FAST).up()

    assert exc.value.participants == ['backend', 'frontend']
    assert runtime.calls == []


def test_provisioning_error_before_any_container(tmp_path):
    runtime = InMemoryRuntime()
    runtime.inject_failure("create_volume", "shop_data")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)

    with pytest.raises(ProvisioningError):
        orchestrator.up()

    assert runtime.containers == {}
    assert "shop_default" in runtime.networks


def test_image_failure_creates_nothing(tmp_path):
    runtime = InMemoryRuntime()
    runtime.inject_failure("pull_image", "acme/frontend:1.0")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)

    with pytest.raises(PartialFailure) as exc:
        orchestrator.up()

    assert exc.value.services == ['frontend']
    assert runtime.operations("create_container") == []
    assert runtime.networks == {}


def test_teardown_is_reverse_of_startup(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)
    orchestrator.up()

    orchestrator.stop()

    stopped = [target for _, target in runtime.operations("stop")]
    assert stopped == ['shop_frontend_1', 'shop_backend_1', 'shop_mongodb_1']
    assert all(state == ServiceState.STOPPED for state in orchestrator.run_state.snapshot().values())
    # Stopping keeps containers and resources.
    assert len(runtime.containers) == 3
    assert "shop_default" in runtime.networks


def test_up_after_stop_restarts_existing_containers(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)
    orchestrator.up()
    orchestrator.stop()

    orchestrator.up()

    assert len(runtime.operations("create_container")) == 3
    assert len(runtime.operations("start")) == 6
    assert orchestrator.run_state.state('frontend') == ServiceState.RUNNING


def test_down_keeps_named_volumes(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)
    orchestrator.up()
    anonymous = orchestrator.run_state.record('mongodb').anonymous_volumes[0]

    states = orchestrator.down(remove_volumes=False)

    assert runtime.containers == {}
    assert runtime.networks == {}
    assert set(runtime.volumes) == {'shop_data'}
    assert anonymous not in runtime.volumes
    assert all(state == ServiceState.REMOVED for state in states.values())
    removed = [target for _, target in runtime.operations("remove")]
    assert removed == ['shop_frontend_1', 'shop_backend_1', 'shop_mongodb_1']


def test_down_with_volumes(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)
    orchestrator.up()
    orchestrator.down(remove_volumes=True)
    assert runtime.volumes == {}


def test_down_from_a_fresh_invocation(tmp_path):
    first, runtime = orchestrator_for(tmp_path)
    first.up()

    second, _ = orchestrator_for(tmp_path, runtime)
    assert second.ps() == {'mongodb': 'running', 'backend': 'running', 'frontend': 'running'}
    second.down()

    assert runtime.containers == {}
    assert runtime.networks == {}
    assert set(runtime.volumes) == {'shop_data'}


def test_down_after_partial_failure(tmp_path):
    runtime = InMemoryRuntime()
    runtime.inject_failure("create_container", "shop_backend_1")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)
    with pytest.raises(PartialFailure):
        orchestrator.up()

    orchestrator.down()

    assert runtime.containers == {}
    assert runtime.networks == {}


def test_stop_timeout_is_degraded_not_failed(tmp_path):
    runtime = InMemoryRuntime()
    runtime.hang_on_stop("shop_backend_1")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)
    orchestrator.up()

    degraded = orchestrator.stop()

    assert [timeout.service for timeout in degraded] == ['backend']
    assert orchestrator.run_state.state('backend') == ServiceState.STOPPED
    assert runtime.operations("kill") == [("kill", "shop_backend_1")]


def test_healthy_condition(tmp_path):
    content = """
services:
  db:
    image: postgres
    healthcheck:
      test: pg_isready
  api:
    image: acme/api
    depends_on:
      db:
        condition: service_healthy
"""
    orchestrator, _ = orchestrator_for(tmp_path, content=content)
    states = orchestrator.up()
    assert states['db'] == ServiceState.HEALTHY
    assert states['api'] == ServiceState.RUNNING


def test_unhealthy_dependency_blocks_dependent(tmp_path):
    content = """
services:
  db:
    image: postgres
    healthcheck:
      test: pg_isready
  api:
    image: acme/api
    depends_on:
      db:
        condition: service_healthy
"""
    runtime = InMemoryRuntime()
    runtime.set_health_on_start("shop_db_1", "unhealthy")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime, content)

    with pytest.raises(PartialFailure) as exc:
        orchestrator.up()

    assert exc.value.services == ['db']
    assert exc.value.skipped == ['api']
    assert orchestrator.run_state.state('api') == ServiceState.PENDING


class CancellingRuntime(InMemoryRuntime):
    """Calls `hook` right after the named container has been created."""

    def __init__(self, container_name):
        super().__init__()
        self.container_name = container_name
        self.hook = None

    def create_container(self, spec):
        container_id = super().create_container(spec)
        if spec.name == self.container_name:
            self.hook()
        return container_id


def test_cancel_tears_down_what_this_run_started(tmp_path):
    runtime = CancellingRuntime("shop_backend_1")
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)
    runtime.hook = orchestrator.cancel

    with pytest.raises(OperationCancelled):
        orchestrator.up()

    assert runtime.containers == {}
    assert runtime.container_by_name('shop_frontend_1') is None
    assert ("start", "shop_backend_1") not in runtime.operations("start")
    assert orchestrator.run_state.state('backend') == ServiceState.REMOVED
    assert orchestrator.run_state.state('frontend') == ServiceState.PENDING


def test_attached_up_follows_last_service(tmp_path):
    runtime = InMemoryRuntime()
    runtime.logs['shop_frontend_1'] = [b"compiled successfully\n"]
    orchestrator, runtime = orchestrator_for(tmp_path, runtime)
    lines = []

    orchestrator.up(detached=False, log_sink=lines.append)

    assert lines == ["frontend | compiled successfully"]


def test_ps(tmp_path):
    orchestrator, runtime = orchestrator_for(tmp_path)
    assert orchestrator.ps() == {'mongodb': 'pending', 'backend': 'pending', 'frontend': 'pending'}
    orchestrator.up()
    runtime.kill(runtime.find_container('shop_backend_1'))
    assert orchestrator.ps()['backend'] == 'failed'


def test_level_timeout_reports_services_still_in_flight(tmp_path):
    orchestrator, _ = orchestrator_for(tmp_path)
    orchestrator.settings = EngineSettings(level_timeout=0.05)
    release = threading.Event()

    def operation(name):
        if name == 'backend':
            release.wait(5)
        return True

    try:
        with capture_logs() as logs:
            succeeded, failures = orchestrator._run_level(['mongodb', 'backend'], operation)
    finally:
        release.set()

    assert succeeded == ['mongodb']
    assert [failure.service for failure in failures] == ['backend']
    assert "no result after" in failures[0].reason
    timed_out = [entry for entry in logs if entry["event"] == "level_timed_out"]
    assert timed_out and timed_out[0]["in_flight"] == ['backend']
