import os

import pytest
import yaml

from dockstack.MODELS.errors import CycleDetected, ParseError, ParseErrorKind
from dockstack.MODELS.manifest import DEFAULT_NETWORK
from dockstack.MODELS.service_definition import DependencyCondition, MountKind
from dockstack.PARSERS.compose_parser import ComposeParser, parse_duration


def parse(content, tmp_path, context=None, project_name="demo"):
    parser = ComposeParser(context=context or {}, project_name=project_name)
    return parser.parse_from_string(content, base_dir=str(tmp_path))


def test_parse(tmp_path):
    compose_content = {
        'services': {
            'web': {
                'image': 'nginx:latest',
                'ports': ['8080:80'],
                'environment': {
                    'DEBUG': True
                },
                'depends_on': ['db'],
                'restart': 'always'
            },
            'db': {
                'image': 'postgres:13',
                'volumes': ['db_data:/var/lib/postgresql/data']
            }
        },
        'volumes': {
            'db_data': {}
        }
    }

    compose_file = tmp_path / "docker-compose.yml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f, sort_keys=False)

    parser = ComposeParser(context={})
    manifest = parser.parse(str(compose_file))

    assert manifest.service_names == ['web', 'db']
    assert manifest.project_name == os.path.basename(str(tmp_path)).lower()
    assert manifest.base_dir == str(tmp_path)
    web = manifest.services['web']
    assert web.image == 'nginx:latest'
    assert web.ports[0].host_port == 8080
    assert web.ports[0].container_port == 80
    assert web.environment['DEBUG'] == 'true'
    assert web.dependency_names == ['db']

    db = manifest.services['db']
    assert 'db_data' in manifest.volumes
    assert db.volumes[0].kind == MountKind.NAMED
    assert db.volumes[0].source == 'db_data'
    assert db.volumes[0].target == '/var/lib/postgresql/data'


def test_missing_file_is_a_parse_error(tmp_path):
    with pytest.raises(ParseError) as exc:
        ComposeParser().parse(str(tmp_path / "nope.yml"))
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX


def test_implicit_default_network(tmp_path):
    manifest = parse("services:\n  app:\n    image: alpine\n", tmp_path)
    assert DEFAULT_NETWORK in manifest.networks
    assert manifest.networks_for('app') == [DEFAULT_NETWORK]


def test_no_default_network_when_every_service_names_one(tmp_path):
    content = """
services:
  app:
    image: alpine
    networks: [back]
networks:
  back:
    driver: bridge
"""
    manifest = parse(content, tmp_path)
    assert list(manifest.networks) == ['back']
    assert manifest.networks_for('app') == ['back']


def test_undeclared_dependency(tmp_path):
    content = """
services:
  web:
    image: nginx
    depends_on: [db]
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.UNDECLARED_DEPENDENCY
    assert exc.value.name == 'db'


def test_undeclared_volume(tmp_path):
    content = """
services:
  db:
    image: mongo
    volumes: ["data:/data/db"]
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.UNDECLARED_VOLUME
    assert exc.value.name == 'data'


def test_undeclared_network(tmp_path):
    content = """
services:
  db:
    image: mongo
    networks: [backend]
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.UNDECLARED_NETWORK
    assert exc.value.name == 'backend'


def test_duplicate_service_name(tmp_path):
    content = """
services:
  web:
    image: nginx
  web:
    image: httpd
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.DUPLICATE_SERVICE_NAME
    assert exc.value.name == 'web'


def test_duplicate_key_inside_service(tmp_path):
    content = """
services:
  web:
    image: nginx
    image: httpd
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX


def test_yaml_merge_keys_are_not_duplicates(tmp_path):
    content = """
x-common: &common
  image: alpine
  environment:
    A: "1"
services:
  one:
    <<: *common
  two:
    <<: *common
    image: busybox
"""
    manifest = parse(content, tmp_path)
    assert manifest.services['one'].image == 'alpine'
    assert manifest.services['two'].image == 'busybox'
    assert manifest.services['two'].environment == {'A': '1'}


def test_missing_image(tmp_path):
    with pytest.raises(ParseError) as exc:
        parse("services:\n  web:\n    ports: ['80']\n", tmp_path)
    assert exc.value.kind == ParseErrorKind.MISSING_IMAGE
    assert exc.value.name == 'web'


def test_invalid_image_reference(tmp_path):
    with pytest.raises(ParseError) as exc:
        parse("services:\n  web:\n    image: 'Not A Valid:Image'\n", tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_IMAGE_REFERENCE


def test_invalid_yaml(tmp_path):
    with pytest.raises(ParseError) as exc:
        parse("services: [unclosed", tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX


def test_top_level_must_be_mapping(tmp_path):
    with pytest.raises(ParseError) as exc:
        parse("- just\n- a list\n", tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX


def test_cycle_is_rejected_at_load(tmp_path):
    content = """
services:
  backend:
    image: api
    depends_on: [frontend]
  frontend:
    image: web
    depends_on: [backend]
"""
    with pytest.raises(CycleDetected) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.CYCLIC_DEPENDENCY
    assert exc.value.participants == ['backend', 'frontend']


def test_bind_source_must_be_creatable(tmp_path):
    blocker = tmp_path / "file.txt"
    blocker.write_text("x")
    content = f"""
services:
  web:
    image: nginx
    volumes: ["{blocker}/sub:/data"]
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_BIND_SOURCE


def test_missing_bind_source_under_writable_dir_is_accepted(tmp_path):
    content = """
services:
  web:
    image: nginx
    volumes: ["./site/html:/usr/share/nginx/html:ro"]
"""
    manifest = parse(content, tmp_path)
    mount = manifest.services['web'].volumes[0]
    assert mount.kind == MountKind.BIND
    assert mount.source == str(tmp_path / "site" / "html")
    assert mount.read_only is True
    # Loading has no side effects.
    assert not (tmp_path / "site").exists()


def test_volume_short_and_long_syntax(tmp_path):
    content = """
services:
  db:
    image: mongo
    volumes:
      - /data/cache
      - type: volume
        source: data
        target: /data/db
      - type: volume
        target: /scratch
      - type: bind
        source: ./conf
        target: /etc/mongo
        read_only: true
volumes:
  data:
"""
    mounts = parse(content, tmp_path).services['db'].volumes
    assert [m.kind for m in mounts] == [MountKind.ANONYMOUS, MountKind.NAMED, MountKind.ANONYMOUS, MountKind.BIND]
    assert mounts[0].target == '/data/cache'
    assert mounts[1].source == 'data'
    assert mounts[3].read_only is True
    assert mounts[3].mode == 'ro'


def test_port_syntax(tmp_path):
    content = """
services:
  web:
    image: nginx
    ports:
      - "3000"
      - "8080:80"
      - "127.0.0.1:8443:443"
      - "53:53/udp"
      - "9000-9001:9000-9001"
      - target: 5000
        published: 5001
        protocol: tcp
"""
    ports = parse(content, tmp_path).services['web'].ports
    assert (ports[0].host_port, ports[0].container_port) == (None, 3000)
    assert (ports[1].host_port, ports[1].container_port) == (8080, 80)
    assert ports[2].host_ip == '127.0.0.1'
    assert ports[3].protocol == 'udp'
    assert [(p.host_port, p.container_port) for p in ports[4:6]] == [(9000, 9000), (9001, 9001)]
    assert (ports[6].host_port, ports[6].container_port) == (5001, 5000)


def test_invalid_port(tmp_path):
    with pytest.raises(ParseError) as exc:
        parse("services:\n  web:\n    image: nginx\n    ports: ['abc:80']\n", tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX


def test_environment_list_and_passthrough(tmp_path):
    content = """
services:
  web:
    image: nginx
    environment:
      - MODE=prod
      - EMPTY=
      - FROM_HOST
      - NOT_SET
"""
    env = parse(content, tmp_path, context={'FROM_HOST': 'yes'}).services['web'].environment
    assert env == {'MODE': 'prod', 'EMPTY': '', 'FROM_HOST': 'yes'}


def test_env_file_paths(tmp_path):
    (tmp_path / "app.env").write_text("A=1\n")
    content = """
services:
  web:
    image: nginx
    env_file:
      - app.env
      - path: ./optional.env
        required: false
"""
    files = parse(content, tmp_path).services['web'].env_files
    assert files == [str(tmp_path / "app.env")]


def test_depends_on_conditions(tmp_path):
    content = """
services:
  db:
    image: postgres
  cache:
    image: redis
  api:
    image: api
    depends_on:
      db:
        condition: service_healthy
      cache:
        condition: service_started
"""
    api = parse(content, tmp_path).services['api']
    assert api.dependency_names == ['db', 'cache']
    assert api.depends_on[0].condition == DependencyCondition.SERVICE_HEALTHY
    assert api.requires_healthy('db')
    assert not api.requires_healthy('cache')


def test_unsupported_depends_on_condition(tmp_path):
    content = """
services:
  db:
    image: postgres
  api:
    image: api
    depends_on:
      db:
        condition: service_completed_successfully
"""
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX


def test_build_and_image_tag(tmp_path):
    content = """
services:
  api:
    build:
      context: ./api
      dockerfile: Dockerfile.dev
      args:
        VERSION: 2
  worker:
    build: ./worker
    image: acme/worker:dev
"""
    manifest = parse(content, tmp_path)
    api = manifest.services['api']
    assert api.build.context == str(tmp_path / "api")
    assert api.build.dockerfile == str(tmp_path / "api" / "Dockerfile.dev")
    assert api.build.args == {'VERSION': '2'}
    assert manifest.image_for('api') == 'demo-api'
    assert manifest.image_for('worker') == 'acme/worker:dev'


def test_command_healthcheck_and_grace_period(tmp_path):
    content = """
services:
  web:
    image: nginx
    command: nginx -g "daemon off;"
    stop_grace_period: 1m30s
    healthcheck:
      test: curl -f http://localhost
      interval: 5s
      retries: 5
"""
    web = parse(content, tmp_path).services['web']
    assert web.command == ['nginx', '-g', 'daemon off;']
    assert web.stop_grace_period == 90.0
    assert web.healthcheck.test == ['CMD-SHELL', 'curl -f http://localhost']
    assert web.healthcheck.interval == 5.0
    assert web.healthcheck.retries == 5


def test_interpolation(tmp_path):
    content = """
services:
  web:
    image: "nginx:${TAG:-latest}"
    environment:
      URL: "http://${HOST}:${PORT-80}"
      PRICE: "$$5"
"""
    web = parse(content, tmp_path, context={'HOST': 'example.org'}).services['web']
    assert web.image == 'nginx:latest'
    assert web.environment['URL'] == 'http://example.org:80'
    assert web.environment['PRICE'] == '$5'


def test_required_variable(tmp_path):
    content = 'services:\n  web:\n    image: "nginx:${TAG:?tag must be set}"\n'
    with pytest.raises(ParseError) as exc:
        parse(content, tmp_path)
    assert exc.value.kind == ParseErrorKind.INVALID_SYNTAX
    assert exc.value.name == 'TAG'


def test_dotenv_feeds_interpolation(tmp_path, monkeypatch):
    monkeypatch.delenv('WEB_TAG', raising=False)
    (tmp_path / ".env").write_text("WEB_TAG=1.25\n")
    compose_file = tmp_path / "compose.yml"
    compose_file.write_text('services:\n  web:\n    image: "nginx:${WEB_TAG}"\n')
    manifest = ComposeParser().parse(str(compose_file))
    assert manifest.services['web'].image == 'nginx:1.25'


def test_project_name_precedence(tmp_path):
    content = "name: FromFile\nservices:\n  web:\n    image: nginx\n"
    assert parse(content, tmp_path, project_name=None).project_name == 'fromfile'
    assert parse(content, tmp_path, project_name='Explicit').project_name == 'explicit'
    plain = "services:\n  web:\n    image: nginx\n"
    assert parse(plain, tmp_path, context={'DOCKSTACK_PROJECT_NAME': 'env'}, project_name=None).project_name == 'env'


def test_container_name(tmp_path):
    content = """
services:
  web:
    image: nginx
  db:
    image: mongo
    container_name: my-db
"""
    manifest = parse(content, tmp_path)
    assert manifest.container_name('web') == 'demo_web_1'
    assert manifest.container_name('db') == 'my-db'


def test_manifest_is_immutable(tmp_path):
    manifest = parse("services:\n  web:\n    image: nginx\n", tmp_path)
    with pytest.raises(Exception):
        manifest.project_name = 'other'


def test_empty_document(tmp_path):
    manifest = parse("", tmp_path)
    assert manifest.services == {}


@pytest.mark.parametrize("value, expected", [
    ("10s", 10.0),
    ("1m30s", 90.0),
    ("500ms", 0.5),
    (3, 3.0),
    ("1h", 3600.0),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


def test_parse_duration_rejects_garbage():
    with pytest.raises(ValueError):
        parse_duration("ten seconds")
