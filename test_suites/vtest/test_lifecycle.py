"""Instance lifecycle tests against the fake varnishd.

These run anywhere: test_suites/fake_varnishd.py stands in for varnishd and
its behaviour is picked with FAKE_VARNISHD_MODE.
"""

import json
from pathlib import Path

import pytest

import vadm
from vadm import AdmTimeoutError, AuthenticationError, CommandError, ProcessError
from vtest import InstanceState, Varnish
from vtest.varnish import PINNED_PARAMETERS

SYNTH_VCL = 'backend default none;\nsub vcl_recv { return (synth(200, "Good test")); }\n'


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def set_mode(monkeypatch, mode):
    monkeypatch.setenv("FAKE_VARNISHD_MODE", mode)


def read_json(path: Path):
    with open(path) as f:
        return json.load(f)


class TestStart:
    """Successful start sequence."""

    def test_start_discovers_url(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))

        assert varnish.state is InstanceState.RUNNING
        assert varnish.url == "http://127.0.0.1:8080"
        assert varnish.is_running()

    def test_workdir_and_log_location(self, start_varnish, fake_builder, tmp_path):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))

        workdir = Path(varnish.name)
        assert workdir.parent == tmp_path
        assert workdir.name.startswith("vtest-py.")
        assert workdir.is_dir()
        assert Path(varnish.name + ".log").exists()

    def test_each_instance_gets_own_workdir(self, start_varnish, fake_builder):
        first = start_varnish(fake_builder.vcl_string(SYNTH_VCL))
        second = start_varnish(fake_builder)
        assert first.name != second.name

    def test_varnishd_arguments(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder
                                .vcl_string(SYNTH_VCL)
                                .parameter("default_ttl", "10")
                                .parameter("default_grace", "0"))

        argv = read_json(Path(varnish.name) / "argv.json")

        assert argv[:7] == ["-F", "-f", "", "-n", varnish.name, "-a", "127.0.0.1:0"]
        m = argv.index("-M")
        assert argv[m + 1].startswith("127.0.0.1:")
        assert argv[7:m] == [x for v in PINNED_PARAMETERS for x in ("-p", v)]
        assert argv[m + 2:] == ["-p", "default_ttl=10", "-p", "default_grace=0"]

    def test_inline_vcl_loaded(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder
                                .backend("origin", "http://127.0.0.1:9999")
                                .vcl_string("sub vcl_recv { return (pass); }"))

        loaded = (Path(varnish.name) / "loaded.vcl").read_text()

        assert varnish.config.full_vcl() in loaded
        assert loaded.lstrip().startswith("vcl 4.1;")
        assert '.host_header = "127.0.0.1";' in loaded

    def test_file_vcl_loaded(self, start_varnish, fake_builder, tmp_path):
        vcl_file = tmp_path / "test.vcl"
        vcl_file.write_text("vcl 4.0;\nbackend default none;\n")

        varnish = start_varnish(fake_builder.vcl_file(vcl_file))

        assert (Path(varnish.name) / "loaded.vcl").read_text() == vcl_file.read_text()

    def test_ipv6_listen_address(self, start_varnish, fake_builder, monkeypatch):
        set_mode(monkeypatch, "ipv6")
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))
        assert varnish.url == "http://[::1]:8080"

    def test_start_twice_refused(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))
        with pytest.raises(RuntimeError):
            varnish.start()

    def test_builder_start(self, fake_builder):
        varnish = fake_builder.vcl_string(SYNTH_VCL).start()
        try:
            assert varnish.state is InstanceState.RUNNING
        finally:
            varnish.stop()


class TestAdmin:
    """Admin passthrough on a running instance."""

    def test_ping(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))
        assert varnish.adm("ping").startswith("PONG ")

    def test_unknown_command(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))

        with pytest.raises(CommandError) as exc_info:
            varnish.adm("no.such.command")
        assert exc_info.value.status == 101

        status, body = varnish.adm_raw("no.such.command")
        assert status == 101
        assert body.startswith(b"Unknown request.")

    def test_connect_by_name(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))

        with vadm.connect(varnish.name, timeout=10) as conn:
            assert conn.ask("ping").startswith("PONG ")

    def test_wait_running_after_restart(self, start_varnish, fake_builder):
        varnish = start_varnish(fake_builder.vcl_string(SYNTH_VCL))

        varnish.adm("stop")
        varnish.adm("start")

        assert varnish.wait_running(timeout=10) == "http://127.0.0.1:8080"


class TestStop:
    """Teardown."""

    def test_stop_cleans_up(self, fake_builder):
        varnish = Varnish(fake_builder.vcl_string(SYNTH_VCL).build())
        varnish.start()
        process = varnish.process
        workdir = Path(varnish.name)

        varnish.stop()

        assert varnish.state is InstanceState.STOPPED
        assert process.returncode is not None
        assert not workdir.exists()
        assert not Path(varnish.name + ".log").exists()
        assert varnish.connection.closed

    def test_stop_is_idempotent(self, fake_builder):
        varnish = Varnish(fake_builder.vcl_string(SYNTH_VCL).build())
        varnish.start()
        varnish.stop()
        varnish.stop()
        assert varnish.state is InstanceState.STOPPED

    def test_context_manager(self, fake_builder):
        with Varnish(fake_builder.vcl_string(SYNTH_VCL).build()).start() as varnish:
            workdir = Path(varnish.name)
            assert workdir.exists()
        assert not workdir.exists()


class TestStartFailures:
    """Start errors and cleanup after them."""

    def test_vcl_error_reported_verbatim(self, fake_builder):
        varnish = Varnish(fake_builder.vcl_string("FAIL_COMPILE\n").build())

        with pytest.raises(CommandError) as exc_info:
            varnish.start()

        error = exc_info.value
        assert error.status == 106
        assert error.command.startswith("vcl.inline vcl1 << XXYYZZ")
        assert error.body.startswith("Message from VCC-compiler:\n")
        assert "Unknown token 'FAIL_COMPILE'" in error.body
        assert error.body.endswith("VCL compilation failed")
        assert varnish.state is InstanceState.FAILED

        workdir = Path(varnish.name)
        varnish.stop()
        assert not workdir.exists()

    def test_varnishd_exits_early(self, fake_builder, monkeypatch):
        set_mode(monkeypatch, "exit")
        varnish = Varnish(fake_builder.build())

        with pytest.raises(ProcessError) as exc_info:
            varnish.start()
        assert "status 3" in str(exc_info.value)
        assert "told to exit" in str(exc_info.value)
        varnish.stop()

    def test_missing_binary(self, fake_builder, tmp_path):
        varnish = Varnish(fake_builder.command(str(tmp_path / "no-varnishd")).build())

        with pytest.raises(ProcessError):
            varnish.start()
        varnish.stop()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.parametrize("mode", ["bad_challenge", "short_nonce"])
    def test_handshake_failure(self, fake_builder, monkeypatch, mode):
        set_mode(monkeypatch, mode)
        varnish = Varnish(fake_builder.build())

        with pytest.raises(AuthenticationError):
            varnish.start()
        varnish.stop()
        assert varnish.process.returncode is not None

    def test_stop_before_connect(self, fake_builder, monkeypatch, tmp_path):
        set_mode(monkeypatch, "never_connect")
        varnish = Varnish(fake_builder.build())

        with pytest.raises(AdmTimeoutError):
            varnish.start(timeout=0.5)
        assert varnish.state is InstanceState.FAILED
        assert varnish.is_running()

        varnish.stop()

        assert varnish.process.returncode is not None
        assert list(tmp_path.iterdir()) == []

    def test_builder_start_timeout_kills_process(self, fake_builder, monkeypatch, tmp_path):
        set_mode(monkeypatch, "never_connect")

        with pytest.raises(AdmTimeoutError):
            fake_builder.start(timeout=0.5)

        assert list(tmp_path.iterdir()) == []

    def test_child_stopped(self, fake_builder, monkeypatch):
        set_mode(monkeypatch, "stopped")
        varnish = Varnish(fake_builder.vcl_string(SYNTH_VCL).build())

        with pytest.raises(ProcessError, match="child stopped"):
            varnish.start()
        varnish.stop()

    def test_child_never_runs(self, fake_builder, monkeypatch):
        set_mode(monkeypatch, "never_running")
        clock = FakeClock()
        config = fake_builder.vcl_string(SYNTH_VCL).poll_interval(0.25).build()
        varnish = Varnish(config, clock=clock, sleep=clock.sleep)

        with pytest.raises(AdmTimeoutError):
            varnish.start(timeout=1.0)
        assert clock.now == pytest.approx(1.0)
        varnish.stop()

    def test_builder_start_cleans_up(self, fake_builder, monkeypatch, tmp_path):
        set_mode(monkeypatch, "stopped")

        with pytest.raises(ProcessError):
            fake_builder.vcl_string(SYNTH_VCL).start()

        assert list(tmp_path.iterdir()) == []
