"""Shared fixtures: a throw-away installation root and fake binaries."""

import grp
import os
import pwd

import pytest

import omadactl


class SleepRecorder:
	"""Stands in for time.sleep so polling tests run instantly."""

	def __init__(self):
		self.calls = []

	def __call__(self, seconds):
		self.calls.append(seconds)


class FakeRunner:
	"""Stands in for omadactl_util_run, recording every command."""

	def __init__(self, code=0, output=""):
		self.code = code
		self.output = output
		self.calls = []

	def __call__(self, cmd, timeout=30, tee=None):
		self.calls.append(list(cmd))
		if tee:
			tee.write(self.output)
		return self.code, self.output


def current_identity():
	pw = pwd.getpwuid(os.geteuid())
	return omadactl.OperatingIdentity(
		pw.pw_name, grp.getgrgid(pw.pw_gid).gr_name, pw.pw_uid, pw.pw_gid
	)


@pytest.fixture
def identity():
	return current_identity()


@pytest.fixture
def fake_bin(tmp_path):
	def make(name, mode=0o755):
		directory = tmp_path / "fakebin"
		directory.mkdir(exist_ok=True)
		path = directory / name
		path.write_text("#!/bin/sh\nexit 0\n")
		os.chmod(path, mode)
		return path

	return make


@pytest.fixture
def home(tmp_path):
	root = tmp_path / "omada"
	for name in ("bin", "lib", "properties"):
		(root / name).mkdir(parents=True)
	return root


@pytest.fixture
def config(tmp_path, home, identity, fake_bin):
	log = home / "logs" / "startup.log"
	return omadactl.Config(
		home=str(home),
		jre_home="/opt/jre",
		jsvc_bin=str(fake_bin("jsvc")),
		curl_bin=str(fake_bin("curl")),
		mongod_bin=str(fake_bin("mongod")),
		user=identity.username,
		std_log=str(log),
		err_log=str(log),
		pid_file=str(tmp_path / "omada.pid"),
		poll_host="controller.example",
	)


@pytest.fixture
def ctx(config):
	return omadactl.Context(
		config=config,
		target=omadactl.OmadaTarget(config),
		console=omadactl.Console(no_color=True),
		sleep=SleepRecorder(),
	)


@pytest.fixture
def runner(monkeypatch):
	fake = FakeRunner()
	monkeypatch.setattr(omadactl, "omadactl_util_run", fake)
	return fake
