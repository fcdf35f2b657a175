"""Tests for machine providers and the provider registry."""

from unittest.mock import MagicMock, patch

import pytest

from apporchestra.errors import (
    BadArgument,
    Cancelled,
    InternalInvariant,
    NoMachineAvailable,
    ProviderError,
    TransientProviderError,
)
from apporchestra.machines import (
    ByonProvider,
    LocalhostProvider,
    ProviderRegistry,
    parse_host,
)
from apporchestra.schemas import Location
from apporchestra.tasks import CancellationToken


@pytest.fixture
def byon_location():
    return Location(
        location_id="lab",
        name="Lab",
        provider="byon",
        config={
            "user": "deploy",
            "private_key_file": "~/.ssh/id_ed25519",
            "hosts": ["10.0.0.5", "ops@10.0.0.6:2222"],
        },
    )


class TestParseHost:
    """Tests for byon host entry parsing."""

    def test_plain_host_uses_defaults(self):
        spec = parse_host("10.0.0.5", {"user": "deploy", "port": 22})

        assert (spec.host, spec.user, spec.port) == ("10.0.0.5", "deploy", 22)

    def test_user_and_port(self):
        spec = parse_host("ops@10.0.0.6:2222", {"user": "deploy"})

        assert (spec.host, spec.user, spec.port) == ("10.0.0.6", "ops", 2222)
        assert spec.address == "10.0.0.6:2222"

    def test_mapping(self):
        spec = parse_host({"host": "h", "os": "linux", "architecture": "x86_64"}, {})

        assert spec.os_tag == "linux"

    def test_bad_port(self):
        with pytest.raises(BadArgument, match="port"):
            parse_host("h:ssh", {})

    def test_mapping_without_host(self):
        with pytest.raises(BadArgument):
            parse_host({"user": "x"}, {})


class TestByonProvider:
    """Tests for host allocation."""

    def test_hands_out_each_host_once(self, byon_location):
        provider = ByonProvider(byon_location)

        first = provider.obtain(byon_location)
        second = provider.obtain(byon_location)

        assert {first.hostname, second.hostname} == {"10.0.0.5", "10.0.0.6"}
        assert first.transport == "ssh"
        assert first.credentials["private_key_file"] == "~/.ssh/id_ed25519"
        with pytest.raises(NoMachineAvailable):
            provider.obtain(byon_location)

    def test_release_frees_host(self, byon_location):
        provider = ByonProvider(byon_location)
        handles = [provider.obtain(byon_location), provider.obtain(byon_location)]

        provider.release(handles[1])

        assert provider.obtain(byon_location).hostname == handles[1].hostname

    def test_double_release(self, byon_location):
        provider = ByonProvider(byon_location)
        handle = provider.obtain(byon_location)
        provider.release(handle)

        with pytest.raises(InternalInvariant, match="released twice"):
            provider.release(handle)

    def test_cancelled_obtain(self, byon_location):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(Cancelled):
            ByonProvider(byon_location).obtain(byon_location, token=token)

    def test_localhost_entry_uses_local_transport(self):
        location = Location("lab", "Lab", "byon", {"hosts": ["localhost"]})

        assert ByonProvider(location).obtain(location).transport == "local"

    def test_hosts_must_be_list(self):
        with pytest.raises(BadArgument):
            ByonProvider(Location("lab", "Lab", "byon", {"hosts": "10.0.0.5"}))

    def test_describe_probes_uname(self, byon_location):
        provider = ByonProvider(byon_location)
        handle = provider.obtain(byon_location)
        result = MagicMock(returncode=0, stdout="Darwin\narm64\n", stderr="")

        with patch("apporchestra.machines.byon.subprocess.run", return_value=result) as run:
            details = provider.describe(handle)

        assert details.os_tag == "osx"
        assert details.architecture == "arm64"
        assert run.call_args[0][0][0] == "ssh"

    def test_describe_unreachable(self, byon_location):
        provider = ByonProvider(byon_location)
        handle = provider.obtain(byon_location)
        result = MagicMock(returncode=255, stdout="", stderr="Connection refused")

        with patch("apporchestra.machines.byon.subprocess.run", return_value=result):
            with pytest.raises(TransientProviderError, match="Connection refused"):
                provider.describe(handle)

    def test_rehydrate_marks_in_use(self, byon_location):
        provider = ByonProvider(byon_location)
        data = provider.obtain(byon_location).to_dict()

        fresh = ByonProvider(byon_location)
        handle = fresh.rehydrate(byon_location, data)

        assert handle.handle_id == data["handle_id"]
        assert fresh.obtain(byon_location).hostname != handle.hostname


class TestLocalhostProvider:
    """Tests for the localhost provider."""

    def test_distinct_handles(self):
        location = Location("loc-local", "localhost", "localhost")
        provider = LocalhostProvider()

        first = provider.obtain(location)
        second = provider.obtain(location)

        assert first.handle_id != second.handle_id
        assert first.transport == "local"
        assert "127.0.0.1" in first.details.addresses

    def test_double_release(self):
        location = Location("loc-local", "localhost", "localhost")
        provider = LocalhostProvider()
        handle = provider.obtain(location)
        provider.release(handle)

        with pytest.raises(InternalInvariant):
            provider.release(handle)


class TestProviderRegistry:
    """Tests for provider dispatch."""

    def test_one_instance_per_location(self, byon_location):
        registry = ProviderRegistry.create_default()

        assert registry.for_location(byon_location) is registry.for_location(byon_location)

    def test_unknown_tag(self):
        registry = ProviderRegistry.create_default()

        with pytest.raises(ProviderError, match="No provider registered"):
            registry.for_location(Location("cloud", "Cloud", "aws-ec2"))

    def test_default_tags(self):
        assert ProviderRegistry.create_default().list_tags() == ["byon", "localhost"]
