"""compose 解析与容器归属判断测试"""

import pytest

from container_debug.compose import (
    LABEL_CONFIG_FILES,
    LABEL_SERVICE,
    LABEL_WORKING_DIR,
    ComposeMatcher,
    load_compose_topology,
)
from container_debug.errors import ComposeConfigError

from conftest import PROJECT_FILE, compose_labels

COMPOSE_YAML = """
services:
  web:
    image: nginx:1.25
    ports:
      - "8080:80"
      - "127.0.0.1:8443:443/tcp"
      - "5353:53/udp"
  db:
    image: postgres:16
    expose:
      - "5432"
  api:
    build: ./api
    ports:
      - target: 9000
        published: 19000
      - "7000-7001:7000-7001"
"""


class TestLoadComposeTopology:
    def test_loads_services_sorted(self, tmp_path):
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text(COMPOSE_YAML)

        topology = load_compose_topology(str(compose_file))

        assert topology.path == str(compose_file)
        assert topology.sorted_services == ["api", "db", "web"]
        assert topology.services["web"].image == "nginx:1.25"
        assert topology.tracking_project is True

    def test_collects_container_side_tcp_ports(self, tmp_path):
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text(COMPOSE_YAML)

        topology = load_compose_topology(str(compose_file))

        assert topology.services["web"].ports == ("80", "443")
        assert topology.services["db"].ports == ("5432",)
        assert topology.services["api"].ports == ("9000", "7000", "7001")

    def test_directory_resolves_default_file(self, tmp_path):
        (tmp_path / "compose.yaml").write_text(COMPOSE_YAML)

        topology = load_compose_topology(str(tmp_path))

        assert topology.path == str(tmp_path / "compose.yaml")

    def test_empty_path_tracks_everything(self):
        topology = load_compose_topology("")

        assert topology.path == ""
        assert topology.tracking_project is False
        assert topology.sorted_services == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(ComposeConfigError):
            load_compose_topology(str(tmp_path / "nope.yml"))

    def test_invalid_yaml(self, tmp_path):
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text("services: [web\n")

        with pytest.raises(ComposeConfigError):
            load_compose_topology(str(compose_file))

    def test_no_services(self, tmp_path):
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text("version: '3'\n")

        with pytest.raises(ComposeConfigError, match="services"):
            load_compose_topology(str(compose_file))

    def test_service_without_image_or_build(self, tmp_path):
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text("services:\n  web:\n    command: sleep 1\n")

        with pytest.raises(ComposeConfigError, match="web"):
            load_compose_topology(str(compose_file))


class TestComposeMatcher:
    def setup_method(self):
        self.matcher = ComposeMatcher(PROJECT_FILE, ["web", "db"])

    def test_relative_config_file_joined_with_working_dir(self):
        assert self.matcher.matches(compose_labels("web")) == (True, "web")

    def test_absolute_config_file_of_other_project(self):
        labels = compose_labels("web", config_files="/other/docker-compose.yml")

        assert self.matcher.matches(labels) == (False, "")

    def test_absolute_config_file_of_same_project(self):
        labels = compose_labels("db", working_dir="/elsewhere", config_files=PROJECT_FILE)

        assert self.matcher.matches(labels) == (True, "db")

    def test_path_is_normalized(self):
        labels = compose_labels("web", working_dir="/srv/app/sub", config_files="../docker-compose.yml")

        assert self.matcher.matches(labels) == (True, "web")

    def test_multiple_config_files(self):
        labels = compose_labels("web", config_files="/srv/base.yml,docker-compose.yml")

        assert self.matcher.matches(labels) == (True, "web")

    def test_undeclared_service(self):
        assert self.matcher.matches(compose_labels("cache")) == (False, "")

    @pytest.mark.parametrize("missing", [LABEL_WORKING_DIR, LABEL_CONFIG_FILES, LABEL_SERVICE])
    def test_missing_label(self, missing):
        labels = compose_labels("web")
        del labels[missing]

        assert self.matcher.matches(labels) == (False, "")

    def test_idempotent(self):
        labels = compose_labels("web")

        assert self.matcher.matches(labels) == self.matcher.matches(labels)

    def test_empty_project_path_tracks_all(self):
        matcher = ComposeMatcher("", [])

        assert matcher.matches({}) == (True, "")
        assert matcher.matches(compose_labels("anything", config_files="/x.yml")) == (True, "anything")
