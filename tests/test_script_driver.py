"""Tests for the script-driven process drivers."""

import shutil
from unittest.mock import MagicMock

import pytest

from apporchestra.drivers import (
    DriverContext,
    NoopDriver,
    VanillaProcessDriver,
    download_commands,
    validate_port_numbers,
)
from apporchestra.errors import BadArgument, PhaseTimeout
from apporchestra.machines import MachineDetails, MachineHandle
from apporchestra.remote import RemoteExecutor, ScriptResult, ShellExecutor
from apporchestra.sensors import EntitySensors, SensorBus
from apporchestra.tasks import CancellationToken
from apporchestra.templates import TemplateRenderer

from conftest import ManualExecutor


@pytest.fixture
def remote():
    executor = MagicMock(spec=RemoteExecutor)
    executor.execute.return_value = ScriptResult(0)
    return executor


@pytest.fixture
def make_ctx(remote, tmp_path):
    def make(config=None, executor=None, details=None):
        return DriverContext(
            entity_id="web",
            application_id="app1",
            type_tag="vanilla-process",
            config=dict(config or {}),
            machine=MachineHandle("h1", "loc-local", "localhost", details=details),
            sensors=EntitySensors(SensorBus(executor=ManualExecutor()), "web"),
            token=CancellationToken(),
            executor=executor or remote,
            renderer=TemplateRenderer([tmp_path]),
            base_dir=str(tmp_path / "base"),
        )

    return make


def rendered(remote, index=-1):
    script = remote.execute.call_args_list[index][0][1]
    return script, script.render()


class TestHelpers:
    """Tests for port validation and download commands."""

    def test_ports(self):
        assert validate_port_numbers([80, 8080]) == [80, 8080]
        assert validate_port_numbers(443) == [443]
        assert validate_port_numbers(None) == []

    @pytest.mark.parametrize("port", [0, 70000, "80", True])
    def test_invalid_port(self, port):
        with pytest.raises(BadArgument, match="Invalid port"):
            validate_port_numbers([port])

    def test_download_falls_back(self):
        [command] = download_commands(["https://a/x.tgz", "https://b/x.tgz"], "x.tgz")

        assert command.count("curl -fsSL -o x.tgz") == 2
        assert "wget -q -O x.tgz https://b/x.tgz" in command

    def test_download_requires_url(self):
        with pytest.raises(BadArgument):
            download_commands([], "x.tgz")


class TestVanillaProcessDriver:
    """Tests for script generation per phase."""

    def test_canonical_paths(self, make_ctx, tmp_path):
        ctx = make_ctx({"version": "2.1"})
        driver = VanillaProcessDriver()

        assert driver.install_dir(ctx) == f"{tmp_path}/base/installs/vanilla-process_2.1"
        assert driver.run_dir(ctx) == f"{tmp_path}/base/apps/app1/entities/vanilla-process_web"
        assert driver.pid_file(ctx).endswith("vanilla-process_web/pid")

    def test_install_uses_marker(self, make_ctx, remote):
        ctx = make_ctx({
            "version": "2.1",
            "download_url": "https://example.com/app-{{ version }}-{{ os }}-{{ arch }}.tgz",
            "install_command": "./configure",
        })

        VanillaProcessDriver().install(ctx)

        script, text = rendered(remote)
        assert script.options.install_marker.endswith("vanilla-process_2.1/INSTALL_COMPLETE")
        assert "https://example.com/app-2.1-linux-x86_64.tgz" in text
        assert "tar xzf package.tgz" in text
        assert "./configure" in text

    def test_download_url_uses_machine_details(self, make_ctx, remote):
        ctx = make_ctx(
            {"download_url": "https://example.com/{{ os }}/{{ arch }}.tgz"},
            details=MachineDetails("osx", "arm64"),
        )

        VanillaProcessDriver().install(ctx)

        assert "https://example.com/osx/arm64.tgz" in rendered(remote)[1]

    def test_customize_checks_ports(self, make_ctx, remote):
        VanillaProcessDriver().customize(make_ctx({"required_ports": [8080]}))

        assert "/dev/tcp/127.0.0.1/8080" in rendered(remote)[1]

    def test_customize_rejects_bad_port(self, make_ctx, remote):
        with pytest.raises(BadArgument):
            VanillaProcessDriver().customize(make_ctx({"required_ports": [99999]}))
        remote.execute.assert_not_called()

    def test_customize_renders_templates(self, make_ctx, remote):
        ctx = make_ctx({
            "port": 8080,
            "templates": {"conf/app.conf": "inline:port={{ config.port }} id={{ entity.id }}"},
        })

        VanillaProcessDriver().customize(ctx)

        machine, path, content, token = remote.write_file.call_args[0]
        assert path.endswith("vanilla-process_web/conf/app.conf")
        assert content == b"port=8080 id=web"

    @pytest.mark.parametrize("destination", ["/etc/passwd", "../escape.conf"])
    def test_template_destination_escape(self, make_ctx, destination):
        ctx = make_ctx({"templates": {destination: "inline:x"}})

        with pytest.raises(BadArgument, match="run dir"):
            VanillaProcessDriver().customize(ctx)

    def test_launch_records_pid(self, make_ctx, remote):
        VanillaProcessDriver().launch(make_ctx({"launch_command": "python -m http.server"}))

        text = rendered(remote)[1]
        assert "nohup bash -c 'python -m http.server'" in text
        assert "echo $! >" in text

    def test_launch_requires_command(self, make_ctx):
        with pytest.raises(BadArgument, match="launch_command"):
            VanillaProcessDriver().launch(make_ctx())

    def test_is_running_uses_pid_file(self, make_ctx, remote):
        remote.execute.return_value = ScriptResult(1)

        assert VanillaProcessDriver().is_running(make_ctx()) is False
        script, _ = rendered(remote)
        assert script.options.fail_on_non_zero is False
        assert script.options.use_pid_file.endswith("/pid")

    def test_stop_signal(self, make_ctx, remote):
        VanillaProcessDriver().stop(make_ctx({"stop_signal": "int"}))

        assert 'kill -2 "$PID"' in rendered(remote)[1]

    def test_stop_escalation(self, make_ctx, remote):
        VanillaProcessDriver().stop(make_ctx({"stop_escalation": True, "stop_grace_seconds": 5}))

        text = rendered(remote)[1]
        assert "seq 1 5" in text
        assert 'kill -9 "$PID"' in text

    def test_sigkill_requires_escalation(self, make_ctx, remote):
        with pytest.raises(BadArgument, match="stop_escalation"):
            VanillaProcessDriver().stop(make_ctx({"stop_signal": "SIGKILL"}))
        remote.execute.assert_not_called()

    def test_unknown_signal(self, make_ctx):
        with pytest.raises(BadArgument, match="Unsupported"):
            VanillaProcessDriver().stop(make_ctx({"stop_signal": "SIGUSR9"}))

    def test_restart_waits_for_exit(self, make_ctx, remote):
        checks = iter([0, 0, 1])

        def execute(machine, script, token):
            if script.name == "check-running":
                return ScriptResult(next(checks))
            return ScriptResult(0)

        remote.execute.side_effect = execute
        driver = VanillaProcessDriver()
        driver.restart_poll_interval = 0

        driver.restart(make_ctx({"launch_command": "sleep 1"}))

        assert [c[0][1].name for c in remote.execute.call_args_list] == [
            "stop", "check-running", "check-running", "check-running", "launch",
        ]

    def test_restart_gives_up_when_process_survives(self, make_ctx, remote):
        driver = VanillaProcessDriver()
        driver.restart_wait_seconds = 0

        with pytest.raises(PhaseTimeout):
            driver.restart(make_ctx({"launch_command": "sleep 1"}))

        names = [c[0][1].name for c in remote.execute.call_args_list]
        assert names == ["stop", "check-running"]


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
class TestLocalExecution:
    """Runs generated scripts through local bash."""

    def test_install_runs_once(self, make_ctx, tmp_path):
        ctx = make_ctx({"install_command": "echo run >> installs.log"}, executor=ShellExecutor())
        driver = VanillaProcessDriver()

        driver.install(ctx)
        driver.install(ctx)

        log = tmp_path / "base" / "installs" / "vanilla-process_latest" / "installs.log"
        assert log.read_text() == "run\n"

    def test_launch_and_check(self, make_ctx):
        ctx = make_ctx({"launch_command": "sleep 30"}, executor=ShellExecutor())
        driver = VanillaProcessDriver()

        assert driver.is_running(ctx) is False
        driver.launch(ctx)
        try:
            assert driver.is_running(ctx) is True
        finally:
            driver.stop(ctx)


class TestNoopDriver:
    """The no-op driver only records calls."""

    def test_phases(self, make_ctx):
        driver = NoopDriver()
        ctx = make_ctx()

        for phase in ("install", "customize", "launch"):
            getattr(driver, phase)(ctx)
        assert driver.is_running(ctx)
        driver.stop(ctx)

        assert driver.calls == ["install", "customize", "launch", "stop"]
        assert not driver.is_running(ctx)
