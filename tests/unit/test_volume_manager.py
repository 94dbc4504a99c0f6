# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Unit tests for the volume manager.
"""
import os
import pytest
from dockstack.MANAGERS.volume_manager import VolumeManager
from dockstack.MODELS.errors import ProvisioningError
from dockstack.MODELS.manifest import VolumeDefinition
from dockstack.RUNTIME.base import LABEL_ANONYMOUS
from dockstack.RUNTIME.in_memory import InMemoryRuntime


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_ensure_creates_volume(self):
        """Test volume creation."""
        runtime = InMemoryRuntime()
        vm = VolumeManager(runtime, "shop")
        handle = vm.ensure(VolumeDefinition(name="data"))
        assert handle.runtime_name == "shop_data"
        assert "shop_data" in runtime.volumes

    def test_ensure_idempotent(self):
        """Test that ensuring the same volume twice returns the existing handle."""
        runtime = InMemoryRuntime()
        vm = VolumeManager(runtime, "shop")
        volume = VolumeDefinition(name="data")
        assert vm.ensure(volume) is vm.ensure(volume)
        assert len(runtime.operations("create_volume")) == 1
        assert vm.handles["shop_data"].runtime_name == "shop_data"

    def test_missing_external_volume(self):
        """External volumes must already exist."""
        vm = VolumeManager(InMemoryRuntime(), "shop")
        with pytest.raises(ProvisioningError):
            vm.ensure(VolumeDefinition(name="archive", external=True))

    def test_remove_volume(self):
        """Test volume removal."""
        runtime = InMemoryRuntime()
        vm = VolumeManager(runtime, "shop")
        volume = VolumeDefinition(name="data")
        vm.ensure(volume)
        assert vm.remove(volume) is True
        assert "shop_data" not in runtime.volumes
        assert vm.remove(volume) is False

    def test_anonymous_volume_name_is_deterministic(self):
        """The same container and target always map to the same volume."""
        first = VolumeManager.anonymous_volume_name("shop_db_1", "/data/db")
        assert first == VolumeManager.anonymous_volume_name("shop_db_1", "/data/db")
        assert first.startswith("shop_db_1_anon_")
        assert first != VolumeManager.anonymous_volume_name("shop_db_1", "/data/configdb")

    def test_create_and_remove_anonymous(self):
        """Anonymous volumes are labelled with their owning container."""
        runtime = InMemoryRuntime()
        vm = VolumeManager(runtime, "shop")
        name = vm.create_anonymous("shop_db_1", "/data/db")
        assert runtime.volumes[name].labels[LABEL_ANONYMOUS] == "shop_db_1"
        assert vm.create_anonymous("shop_db_1", "/data/db") == name
        assert len(runtime.operations("create_volume")) == 1
        assert vm.remove_anonymous(name) is True
        assert vm.remove_anonymous(name) is False

    def test_prepare_bind_source(self, tmp_path):
        """Missing bind sources are created as directories."""
        vm = VolumeManager(InMemoryRuntime(), "shop")
        source = str(tmp_path / "site" / "html")
        assert vm.prepare_bind_source(source) == source
        assert os.path.isdir(source)
