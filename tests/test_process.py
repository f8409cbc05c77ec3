"""Tests for the start/stop state machine."""

import os
import signal

import pytest

import omadactl
from omadactl import (
	ForcedKillFailed,
	ReadinessState,
	StartReadinessFailed,
	StartTimeout,
)

UP = ReadinessState.UP
DOWN = ReadinessState.DOWN
TRANSITIONAL = ReadinessState.TRANSITIONAL


class Probe:
	"""Replays readiness states, repeating the last one when exhausted."""

	def __init__(self, *states):
		self.states = list(states)
		self.calls = 0

	def __call__(self, ctx):
		state = self.states[min(self.calls, len(self.states) - 1)]
		self.calls += 1
		return state


class Liveness:
	def __init__(self, *values):
		self.values = list(values)
		self.calls = 0

	def __call__(self, ctx):
		value = self.values[min(self.calls, len(self.values) - 1)]
		self.calls += 1
		return value


def _must_not_validate(ctx):
	raise AssertionError("validation must not run")


def _launches(runner, marker):
	return [cmd for cmd in runner.calls if marker in cmd]


@pytest.fixture
def prepared(ctx, identity, monkeypatch):
	"""Skip host validation; the controller is not running."""
	ctx.config.paths.log_dir.mkdir()
	monkeypatch.setattr(omadactl, "omadactl_validate", lambda ctx: identity)
	monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(False))
	return ctx


class TestFind:
	def _proc(self, root, pid, cmdline):
		entry = root / str(pid)
		entry.mkdir()
		(entry / "cmdline").write_bytes(cmdline)

	def test_matches_marker(self, tmp_path):
		marker = omadactl.OmadaTarget.main_class
		self._proc(tmp_path, 123, b"jsvc.exec\x00-procname\x00omada\x00" + marker.encode())
		self._proc(tmp_path, 456, b"/usr/bin/mongod\x00--port\x0027217")
		self._proc(tmp_path, os.getpid(), marker.encode())
		(tmp_path / "self").mkdir()
		assert omadactl.omadactl_process_find(marker, tmp_path) == [123]

	def test_missing_proc(self, tmp_path):
		assert omadactl.omadactl_process_find("x", tmp_path / "none") == []


class TestPIDFile:
	def test_read(self, tmp_path):
		pid_file = tmp_path / "omada.pid"
		pid_file.write_text("4242\n")
		assert omadactl.omadactl_process_PID_read(pid_file) == 4242

	@pytest.mark.parametrize("content", ["", "abc", "0", "-5"])
	def test_invalid(self, tmp_path, content):
		pid_file = tmp_path / "omada.pid"
		pid_file.write_text(content)
		assert omadactl.omadactl_process_PID_read(pid_file) is None

	def test_missing(self, tmp_path):
		assert omadactl.omadactl_process_PID_read(tmp_path / "nope.pid") is None


class TestKill:
	def test_signals_pid_from_file(self, tmp_path, monkeypatch):
		pid_file = tmp_path / "omada.pid"
		pid_file.write_text("4242")
		sent = []
		monkeypatch.setattr(omadactl.os, "kill", lambda pid, sig: sent.append((pid, sig)))
		assert omadactl.omadactl_process_kill(pid_file) == 4242
		assert sent == [(4242, signal.SIGTERM)]

	def test_missing_pid_file(self, tmp_path):
		with pytest.raises(ForcedKillFailed) as exc:
			omadactl.omadactl_process_kill(tmp_path / "omada.pid")
		assert exc.value.exit_code == omadactl.EXIT_KILL_FAILED

	def test_signal_failure(self, tmp_path, monkeypatch):
		pid_file = tmp_path / "omada.pid"
		pid_file.write_text("4242")

		def gone(pid, sig):
			raise ProcessLookupError(3, "No such process")

		monkeypatch.setattr(omadactl.os, "kill", gone)
		with pytest.raises(ForcedKillFailed) as exc:
			omadactl.omadactl_process_kill(pid_file)
		assert "4242" in str(exc.value)


class TestStart:
	def test_already_running(self, ctx, runner, monkeypatch, capsys):
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(True))
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", Probe(UP))
		monkeypatch.setattr(omadactl, "omadactl_validate", _must_not_validate)
		omadactl.omadactl_process_start(ctx)
		assert runner.calls == []
		out = capsys.readouterr().out
		assert "already running" in out
		assert "http://controller.example:8088" in out

	def test_already_starting(self, ctx, runner, monkeypatch, capsys):
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(True))
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", Probe(TRANSITIONAL))
		monkeypatch.setattr(omadactl, "omadactl_validate", _must_not_validate)
		omadactl.omadactl_process_start(ctx)
		assert runner.calls == []
		assert "already starting up" in capsys.readouterr().out

	def test_second_start_does_not_relaunch(self, prepared, runner, monkeypatch):
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", Probe(UP))
		omadactl.omadactl_process_start(prepared)
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(True))
		omadactl.omadactl_process_start(prepared)
		assert len(_launches(runner, "start")) == 1

	def test_launches_and_waits_for_up(self, prepared, runner, monkeypatch):
		probe = Probe(TRANSITIONAL, TRANSITIONAL, UP)
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", probe)
		omadactl.omadactl_process_start(prepared)
		launch = _launches(runner, "start")[0]
		assert launch[0] == prepared.config.jsvc_bin
		assert launch[-2:] == [omadactl.OmadaTarget.main_class, "start"]
		assert "-cwd" in launch
		assert probe.calls == 3
		assert prepared.sleep.calls == [1.0, 1.0]

	def test_up_on_last_attempt(self, prepared, runner, monkeypatch):
		probe = Probe(*([TRANSITIONAL] * 299 + [UP]))
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", probe)
		omadactl.omadactl_process_start(prepared)
		assert probe.calls == 300

	def test_never_up_times_out(self, prepared, runner, monkeypatch):
		probe = Probe(TRANSITIONAL)
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", probe)
		with pytest.raises(StartTimeout) as exc:
			omadactl.omadactl_process_start(prepared)
		assert probe.calls == 300
		assert len(prepared.sleep.calls) == 299
		assert "startup.log" in str(exc.value)

	def test_down_fails_fast(self, prepared, runner, monkeypatch):
		probe = Probe(TRANSITIONAL, TRANSITIONAL, DOWN, UP)
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", probe)
		with pytest.raises(StartReadinessFailed) as exc:
			omadactl.omadactl_process_start(prepared)
		assert probe.calls == 3
		assert "startup.log" in str(exc.value)

	def test_launcher_failure(self, prepared, runner, monkeypatch):
		runner.code = 3
		probe = Probe(UP)
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", probe)
		with pytest.raises(StartReadinessFailed):
			omadactl.omadactl_process_start(prepared)
		assert probe.calls == 0

	def test_launcher_output_goes_to_startup_log(self, prepared, runner, monkeypatch):
		runner.output = "jsvc: starting\n"
		monkeypatch.setattr(omadactl, "omadactl_readiness_probe", Probe(UP))
		omadactl.omadactl_process_start(prepared)
		log = prepared.config.paths.log_dir / "startup.log"
		assert "jsvc: starting" in log.read_text()

	def test_validation_failure_aborts(self, ctx, runner, monkeypatch):
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(False))

		def refuse(ctx):
			raise omadactl.BinaryNotFound("mongod")

		monkeypatch.setattr(omadactl, "omadactl_validate", refuse)
		with pytest.raises(omadactl.BinaryNotFound):
			omadactl.omadactl_process_start(ctx)
		assert runner.calls == []


class TestStop:
	@pytest.fixture
	def stopping(self, ctx, runner, monkeypatch):
		ctx.config.paths.log_dir.mkdir()
		sent = []
		monkeypatch.setattr(omadactl.os, "kill", lambda pid, sig: sent.append((pid, sig)))
		# A decoy process that kill must never target
		monkeypatch.setattr(omadactl, "omadactl_process_find", lambda marker: [999])
		return sent

	def test_already_stopped(self, ctx, runner, monkeypatch, capsys):
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(False))
		omadactl.omadactl_process_stop(ctx)
		assert runner.calls == []
		assert "already offline" in capsys.readouterr().out

	def test_graceful(self, ctx, runner, stopping, monkeypatch, capsys):
		liveness = Liveness(True, True, True, False)
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", liveness)
		omadactl.omadactl_process_stop(ctx)
		launch = _launches(runner, "-stop")[0]
		assert launch[-2:] == ["-stop", omadactl.OmadaTarget.main_class]
		assert stopping == []
		assert liveness.calls == 4
		assert "successfully stopped" in capsys.readouterr().out

	def test_stop_output_goes_to_operational_log(self, ctx, runner, stopping, monkeypatch):
		runner.output = "jsvc: stopping\n"
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(True, False))
		omadactl.omadactl_process_stop(ctx)
		assert "jsvc: stopping" in (ctx.config.paths.log_dir / "server.log").read_text()

	def test_forced_kill_uses_pid_file(self, ctx, runner, stopping, monkeypatch, capsys):
		ctx.config.paths.pid_file.write_text("4242\n")
		liveness = Liveness(True)
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", liveness)
		omadactl.omadactl_process_stop(ctx)
		assert stopping == [(4242, signal.SIGTERM)]
		# one initial check plus exactly 30 polls
		assert liveness.calls == 31
		assert len(ctx.sleep.calls) == 29
		# checks at t=0..29: the graceful wait spans (attempts - 1) intervals
		assert sum(ctx.sleep.calls) == (ctx.config.stop_attempts - 1) * ctx.config.poll_interval
		out = capsys.readouterr().out
		assert "Going to kill it" in out
		assert "server.log" in out

	def test_forced_kill_failure(self, ctx, runner, stopping, monkeypatch):
		monkeypatch.setattr(omadactl, "omadactl_process_is_running", Liveness(True))
		with pytest.raises(ForcedKillFailed):
			omadactl.omadactl_process_stop(ctx)
		assert stopping == []


def test_is_running_uses_main_class(ctx, monkeypatch):
	seen = []
	monkeypatch.setattr(omadactl, "omadactl_process_find", lambda marker: seen.append(marker) or [])
	assert not omadactl.omadactl_process_is_running(ctx)
	assert seen == [omadactl.OmadaTarget.main_class]
