#!/usr/bin/env python3
# --
# File: omadactl.py
#
# `omadactl` manages the lifecycle of the Omada SDN controller, a Java
# application run as a service through `jsvc`, together with the `mongod`
# database it embeds. It validates the runtime environment, launches the
# controller, waits for it to serve traffic, and stops it again.
#
# ## Usage
#
# >   omadactl [OPTIONS] start|stop|status|help
#
# ## Installation Layout
#
# >   ${OMADA_HOME}/
# >     bin/mongod        - Symlink to the mongod binary (recreated on start)
# >     data/             - Controller data, owned by the run-as user
# >     lib/              - Controller jars (launcher working directory)
# >     logs/             - startup.log, server.log, mongod.log
# >     properties/       - omada.properties, [omadactl.toml]
# >     work/             - Controller work directory
#
# ## Limitations
#
# Concurrent invocations are not mutually excluded: there is a window
# between the liveness check and the launch, and overlapping start/stop
# runs can race on the pid file.

import argparse
import contextlib
import dataclasses
import enum
import grp
import os
import pwd
import shutil
import signal
import socket
import stat
import subprocess
import sys
import time
import tomllib
from pathlib import Path
from typing import Any, Callable, NoReturn, Optional, TextIO

# -----------------------------------------------------------------------------
#
# GLOBALS
#
# -----------------------------------------------------------------------------

VERSION = "1.0.0"
OMADACTL_NO_COLOR = os.environ.get("OMADACTL_NO_COLOR", "") == "1"

DEFAULT_HOME = "/opt/tplink/EAPController"
DEFAULT_JRE_HOME = "/usr/lib/jvm/default-java"
DEFAULT_HTTP_PORT = 8088
DEFAULT_HTTPS_PORT = 8043

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_KILL_FAILED = 2
EXIT_INTERRUPTED = 130

# Environment variables that override configuration fields. Names are the
# ones operators of the stock control script already know.
ENV_OVERRIDES = {
	"OMADA_HOME": "home",
	"JRE_HOME": "jre_home",
	"JSVC_BIN_PATH": "jsvc_bin",
	"CURL_BIN_PATH": "curl_bin",
	"MONGOD_BIN_PATH": "mongod_bin",
	"OMADA_RUNAS_USER": "user",
	"OMADA_STD_LOG": "std_log",
	"OMADA_ERR_LOG": "err_log",
}

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


class ReadinessState(enum.Enum):
	"""Condition of the supervised application as seen by its health check."""

	UP = "up"
	DOWN = "down"
	TRANSITIONAL = "transitional"


class PollOutcome(enum.Enum):
	DONE = "done"
	FAILED = "failed"
	EXHAUSTED = "exhausted"


@dataclasses.dataclass(frozen=True)
class PollResult:
	"""Result of a bounded polling loop."""

	outcome: PollOutcome
	attempts: int
	value: Any = None


@dataclasses.dataclass(frozen=True)
class OperatingIdentity:
	"""User and group the supervised process and its files run as."""

	username: str
	groupname: str
	uid: int
	gid: int

	@property
	def is_root(self) -> bool:
		return self.uid == 0

	@property
	def owner(self) -> str:
		return f"{self.username}:{self.groupname}"


@dataclasses.dataclass(frozen=True)
class RuntimePaths:
	"""Fixed locations derived from the installation root."""

	home: Path
	log_dir: Path
	work_dir: Path
	data_dir: Path
	property_dir: Path
	pid_file: Path

	@classmethod
	def from_home(cls, home: Path, pid_file: Path) -> "RuntimePaths":
		return cls(
			home=home,
			log_dir=home / "logs",
			work_dir=home / "work",
			data_dir=home / "data",
			property_dir=home / "properties",
			pid_file=pid_file,
		)

	@property
	def lib_dir(self) -> Path:
		return self.home / "lib"

	@property
	def bin_dir(self) -> Path:
		return self.home / "bin"


@dataclasses.dataclass(frozen=True)
class RequiredBinary:
	"""External executable the supervisor depends on."""

	label: str
	path: str


@dataclasses.dataclass(frozen=True)
class DirectoryFailure:
	"""A runtime directory that could not be created or re-owned."""

	path: Path
	reason: str
	remedy: str


# =============================================================================
# Errors
# =============================================================================


class OmadactlError(Exception):
	"""Failure reported to the operator, with an optional manual remedy."""

	exit_code = EXIT_FAILURE

	def __init__(self, message: str, remedy: str = "") -> None:
		super().__init__(message)
		self.remedy = remedy

	def details(self) -> list[str]:
		return []


class IdentityMissing(OmadactlError):
	"""Raised when the run-as user or its primary group does not exist."""


class InsufficientPrivilege(OmadactlError):
	"""Raised when a non-root identity is requested without root rights."""


class DirectoryRepairFailed(OmadactlError):
	"""Raised with every runtime directory that could not be repaired."""

	def __init__(self, failures: list[DirectoryFailure]) -> None:
		self.failures = list(failures)
		count = len(self.failures)
		noun = "directory" if count == 1 else "directories"
		super().__init__(
			f"{count} {noun} could not be repaired",
			remedy="Please correct the above manually first, then retry",
		)

	def details(self) -> list[str]:
		return [
			f"'{f.path}': {f.reason} -> Please run \"{f.remedy}\"" for f in self.failures
		]


class BinaryNotFound(OmadactlError):
	def __init__(self, label: str) -> None:
		self.label = label
		super().__init__(
			f"'{label}' not found",
			remedy=f"Please install '{label}' first and/or set {label.upper()}_BIN_PATH",
		)


class BinaryNotExecutable(OmadactlError):
	def __init__(self, label: str, path: str, who: str) -> None:
		self.label = label
		self.path = path
		super().__init__(
			f"'{path}' ({label}) is not executable by {who}",
			remedy=f"Please run \"chmod u+x '{path}'\" first",
		)


class SymlinkRepairFailed(OmadactlError):
	def __init__(self, link: Path, source: Path, reason: str) -> None:
		self.link = link
		super().__init__(
			f"'{link}' symbolic link creation failed: {reason}",
			remedy=f"Please run \"ln -fs '{source}' '{link}'\" first",
		)


class LogCreateFailed(OmadactlError):
	def __init__(self, path: Path, who: str, reason: str) -> None:
		self.path = path
		super().__init__(
			f"'{path}' preparation failed: {reason}",
			remedy=f"Please run \"touch '{path}'\" as {who} first",
		)


class StartTimeout(OmadactlError):
	def __init__(self, description: str, log: Path, attempts: int) -> None:
		super().__init__(
			f"'{description}' start has failed: not ready after {attempts} checks "
			f"(See logfile '{log}')"
		)


class StartReadinessFailed(OmadactlError):
	def __init__(self, description: str, log: Path, reason: str) -> None:
		super().__init__(
			f"'{description}' start has failed: {reason} (See logfile '{log}')"
		)


class StopTimeout(OmadactlError):
	def __init__(self, description: str, log: Path, attempts: int) -> None:
		super().__init__(
			f"'{description}' controlled stop has failed after {attempts} checks "
			f"(See logfile '{log}')"
		)


class ForcedKillFailed(OmadactlError):
	"""The process may still be alive and needs manual intervention."""

	exit_code = EXIT_KILL_FAILED

	def __init__(self, pid_file: Path, reason: str) -> None:
		self.pid_file = pid_file
		super().__init__(
			f"Forced kill has failed: {reason}",
			remedy="The controller may still be running, please stop it manually",
		)


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------

# =============================================================================
# Console
# =============================================================================


class Console:
	"""Leveled console output respecting verbose/quiet/colour settings."""

	PREFIXES = {"debug": "DBG", "info": "---", "warn": "WRN", "error": "ERR"}
	COLORS = {"debug": "dim", "info": "", "warn": "yellow", "error": "red"}
	CODES = {
		"red": "\033[31m",
		"yellow": "\033[33m",
		"dim": "\033[2m",
		"reset": "\033[0m",
	}

	def __init__(
		self, verbose: bool = False, quiet: bool = False, no_color: bool = False
	) -> None:
		self.verbose = verbose
		self.quiet = quiet
		self.no_color = no_color
		self._progress = False

	def color(self, text: str, color: str, stream: Optional[TextIO] = None) -> str:
		"""Colorize text if colors enabled."""
		stream = stream or sys.stdout
		if not color or self.no_color or not stream.isatty():
			return text
		return f"{self.CODES.get(color, '')}{text}{self.CODES['reset']}"

	def log(self, level: str, msg: str) -> None:
		"""Log message respecting verbose/quiet settings."""
		if self.quiet and level in ("debug", "info"):
			return
		if level == "debug" and not self.verbose:
			return
		self.end_progress()
		stream = sys.stderr if level == "error" else sys.stdout
		line = f"{self.PREFIXES.get(level, '---')} {msg}"
		print(self.color(line, self.COLORS.get(level, ""), stream), file=stream)

	def echo(self, text: str) -> None:
		"""Print raw text, such as captured command output."""
		if self.quiet:
			return
		self.end_progress()
		print(text)

	def progress(self, text: str = ".") -> None:
		"""Print a progress marker without a newline."""
		if self.quiet:
			return
		sys.stdout.write(text)
		sys.stdout.flush()
		self._progress = True

	def end_progress(self) -> None:
		if self._progress:
			self._progress = False
			print()


# =============================================================================
# Tee
# =============================================================================


class Tee:
	"""Sends command output both to the console and to an appended log file."""

	def __init__(self, console: Console, path: Path) -> None:
		self.console = console
		self.path = path
		self._file: Optional[TextIO] = None

	def __enter__(self) -> "Tee":
		try:
			fd = os.open(
				self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT | os.O_NOFOLLOW, 0o600
			)
			self._file = os.fdopen(fd, "a")
		except OSError as e:
			raise LogCreateFailed(self.path, "the current user", e.strerror or str(e)) from e
		return self

	def __exit__(self, *exc_info) -> None:
		if self._file:
			self._file.close()
			self._file = None

	def write(self, text: str) -> None:
		if not text:
			return
		if self._file:
			self._file.write(text if text.endswith("\n") else f"{text}\n")
			self._file.flush()
		for line in text.splitlines():
			self.console.echo(line)


# =============================================================================
# Subprocess
# =============================================================================


# Function: omadactl_util_run CMD TIMEOUT TEE
# Run command with timeout, return (code, combined output).
def omadactl_util_run(
	cmd: list[str], timeout: float = 30, tee: Optional[Tee] = None
) -> tuple[int, str]:
	"""Run command with stderr folded into stdout, return (code, output)."""
	try:
		result = subprocess.run(
			cmd,
			stdout=subprocess.PIPE,
			stderr=subprocess.STDOUT,
			text=True,
			timeout=timeout,
		)
		code, output = result.returncode, result.stdout or ""
	except subprocess.TimeoutExpired:
		code, output = -1, "Command timed out"
	except FileNotFoundError:
		code, output = 127, f"Command not found: {cmd[0]}"
	except OSError as e:
		code, output = 1, str(e)
	if tee:
		tee.write(output)
	return code, output


# =============================================================================
# Polling
# =============================================================================


# Function: omadactl_util_poll PROBE DONE FAIL_FAST ATTEMPTS INTERVAL
# Call PROBE until DONE or FAIL_FAST holds for its value, at most ATTEMPTS times.
def omadactl_util_poll(
	probe: Callable[[], Any],
	done: Callable[[Any], bool],
	fail_fast: Optional[Callable[[Any], bool]] = None,
	attempts: int = 1,
	interval: float = 1.0,
	sleep: Callable[[float], None] = time.sleep,
	on_retry: Optional[Callable[[int], None]] = None,
) -> PollResult:
	"""Bounded retry loop shared by start and stop.

	The probe runs immediately, then after every `interval` seconds, for at
	most `attempts` calls. There is no sleep after the final attempt.
	"""
	value = None
	for attempt in range(1, attempts + 1):
		value = probe()
		if done(value):
			return PollResult(PollOutcome.DONE, attempt, value)
		if fail_fast is not None and fail_fast(value):
			return PollResult(PollOutcome.FAILED, attempt, value)
		if attempt < attempts:
			sleep(interval)
			if on_retry:
				on_retry(attempt)
	return PollResult(PollOutcome.EXHAUSTED, max(attempts, 0), value)


# Function: omadactl_util_report CONSOLE ERROR
# Print an error with its details and remedy.
def omadactl_util_report(console: Console, error: OmadactlError) -> None:
	console.log("error", f"Failed (Exiting) : {error}")
	for line in error.details():
		console.log("error", f" - {line}")
	if error.remedy:
		console.log("error", f"-> {error.remedy}")


# -----------------------------------------------------------------------------
#
# CONFIG
#
# -----------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Config:
	"""Supervisor settings, built once per invocation and never mutated."""

	target: str = "omada"
	home: str = DEFAULT_HOME
	jre_home: str = DEFAULT_JRE_HOME
	jsvc_bin: str = ""
	curl_bin: str = ""
	mongod_bin: str = ""
	user: str = "root"
	std_log: str = ""
	err_log: str = ""
	pid_file: str = "/run/omada.pid"
	poll_host: str = ""
	http_port: int = DEFAULT_HTTP_PORT
	https_port: int = DEFAULT_HTTPS_PORT
	# Attempts count checks, not seconds: checks run immediately and then
	# every poll_interval, so N attempts wait (N - 1) * poll_interval.
	poll_interval: float = 1.0
	start_attempts: int = 300
	stop_attempts: int = 30
	probe_timeout: int = 10
	launcher_timeout: int = 60

	@property
	def paths(self) -> RuntimePaths:
		return RuntimePaths.from_home(Path(self.home), Path(self.pid_file))


_CONFIG_TYPES = {f.name: type(f.default) for f in dataclasses.fields(Config)}


# Function: omadactl_config_load PATH ENV CONSOLE
# Load and merge config: defaults + omadactl.toml + env vars + omada.properties.
def omadactl_config_load(
	path: Optional[str] = None,
	env: Optional[dict[str, str]] = None,
	console: Optional[Console] = None,
) -> Config:
	"""Build the immutable configuration for this invocation."""
	env = os.environ if env is None else env
	values: dict[str, Any] = {}

	# Load from TOML if exists
	home = env.get("OMADA_HOME") or DEFAULT_HOME
	explicit = path or env.get("OMADACTL_CONFIG")
	conf_path = Path(explicit or Path(home) / "properties" / "omadactl.toml")
	if conf_path.exists():
		try:
			with open(conf_path, "rb") as f:
				data = tomllib.load(f)
		# TOMLDecodeError and UnicodeDecodeError are both ValueError
		except (OSError, ValueError) as e:
			data = {}
			if console:
				console.log("warn", f"Failed to load {conf_path}: {e}")
		table = data.get("omadactl", {})
		if isinstance(table, dict):
			values.update(omadactl_config_from_dict(table, console))
		elif console:
			console.log("warn", f"Ignoring {conf_path}: 'omadactl' is not a table")
	elif explicit and console:
		console.log("warn", f"Config file not found: {conf_path}")

	# Apply environment overrides, empty values mean "unset"
	for key, field_name in ENV_OVERRIDES.items():
		if env.get(key):
			values[field_name] = env[key]

	# Management ports come from the controller's own properties
	home = values.get("home", DEFAULT_HOME)
	ports = omadactl_config_read_ports(Path(home) / "properties" / "omada.properties")
	for field_name, port in ports.items():
		values.setdefault(field_name, port)

	return omadactl_config_resolve(Config(**values))


# Function: omadactl_config_from_dict DATA CONSOLE
# Convert a TOML table into Config field values.
def omadactl_config_from_dict(
	data: dict, console: Optional[Console] = None
) -> dict[str, Any]:
	"""Keep known keys, coerced to their field type."""
	values = {}
	for key, value in data.items():
		kind = _CONFIG_TYPES.get(key)
		if kind is None:
			if console:
				console.log("warn", f"Ignoring unknown config key: {key}")
			continue
		try:
			values[key] = kind(value)
		except (TypeError, ValueError):
			if console:
				console.log("warn", f"Ignoring invalid value for {key}: {value!r}")
	return values


# Function: omadactl_config_read_ports PATH
# Read manage.http.port / manage.https.port from a properties file.
def omadactl_config_read_ports(path: Path) -> dict[str, int]:
	keys = {"manage.http.port": "http_port", "manage.https.port": "https_port"}
	ports: dict[str, int] = {}
	try:
		text = path.read_text(errors="replace")
	except OSError:
		return ports
	for line in text.splitlines():
		line = line.strip()
		if not line or line[0] in "#;":
			continue
		key, sep, value = line.partition("=")
		key, value = key.strip(), value.strip()
		if sep and key in keys and value.isdigit():
			ports[keys[key]] = int(value)
	return ports


# Function: omadactl_config_resolve CONFIG
# Fill in values derived from the environment: binary paths, logs, host.
def omadactl_config_resolve(config: Config) -> Config:
	log_dir = config.paths.log_dir
	return dataclasses.replace(
		config,
		jsvc_bin=config.jsvc_bin or shutil.which("jsvc") or "",
		curl_bin=config.curl_bin or shutil.which("curl") or "",
		mongod_bin=config.mongod_bin or shutil.which("mongod") or "",
		std_log=config.std_log or str(log_dir / "startup.log"),
		err_log=config.err_log or str(log_dir / "startup.log"),
		poll_host=config.poll_host or socket.getfqdn(),
	)


# -----------------------------------------------------------------------------
#
# TARGETS
#
# -----------------------------------------------------------------------------


class Target:
	"""A supervised application type.

	Subclasses describe how to launch one kind of Java service under jsvc
	and how to tell whether it is serving traffic.
	"""

	name = ""
	description = ""
	main_class = ""
	health_path = "/"

	def __init__(self, config: Config) -> None:
		self.config = config

	@property
	def startup_log(self) -> Path:
		return self.config.paths.log_dir / "startup.log"

	@property
	def operational_log(self) -> Path:
		return self.config.paths.log_dir / "server.log"

	def classpath(self) -> str:
		return str(self.config.paths.lib_dir / "*")

	def java_opts(self) -> list[str]:
		return []

	def working_directory(self) -> Path:
		return self.config.paths.lib_dir

	def links(self) -> dict[Path, str]:
		"""Symbolic links to (re)create before every start."""
		return {}

	def log_files(self) -> list[Path]:
		files = [Path(self.config.std_log), Path(self.config.err_log), self.startup_log]
		return list(dict.fromkeys(files))

	def health_url(self) -> str:
		return f"http://{self.config.poll_host}:{self.config.http_port}{self.health_path}"

	def launcher_args(self, cwd_supported: bool) -> list[str]:
		"""Options for jsvc, shared by its start and stop invocations."""
		config = self.config
		args = []
		if cwd_supported:
			args.extend(["-cwd", str(self.working_directory())])
		args.extend(
			[
				"-pidfile",
				str(config.paths.pid_file),
				"-home",
				config.jre_home,
				"-cp",
				self.classpath(),
				"-user",
				config.user,
				"-procname",
				self.name,
				"-outfile",
				config.std_log,
				"-errfile",
				config.err_log,
				"-showversion",
			]
		)
		args.extend(self.java_opts())
		return args

	def banner(self) -> list[str]:
		return []


class OmadaTarget(Target):
	"""TP-Link Omada SDN controller with its embedded MongoDB."""

	name = "omada"
	description = "Omada Controller"
	main_class = "com.tplink.smb.omada.starter.OmadaLinuxMain"
	health_path = "/actuator/linux/check"

	@property
	def database_log(self) -> Path:
		return self.config.paths.log_dir / "mongod.log"

	def classpath(self) -> str:
		paths = self.config.paths
		return ":".join(
			[
				"/usr/share/java/commons-daemon.jar",
				str(paths.lib_dir / "*"),
				str(paths.property_dir),
			]
		)

	def java_opts(self) -> list[str]:
		heap_dump = self.config.paths.log_dir / "java_heapdump.hprof"
		return [
			"-server",
			"-Xms128m",
			"-Xmx1024m",
			"-XX:MaxHeapFreeRatio=60",
			"-XX:MinHeapFreeRatio=30",
			"-XX:+HeapDumpOnOutOfMemoryError",
			f"-XX:HeapDumpPath={heap_dump}",
		]

	def links(self) -> dict[Path, str]:
		# The controller starts mongod from its own bin directory
		return {self.config.paths.bin_dir / "mongod": self.config.mongod_bin}

	def log_files(self) -> list[Path]:
		files = super().log_files() + [self.database_log, self.operational_log]
		return list(dict.fromkeys(files))

	def banner(self) -> list[str]:
		config = self.config
		host = config.poll_host
		return [
			f"You can visit 'http://{host}:{config.http_port}' to manage the wireless network by HTTP",
			f"Or visit 'https://{host}:{config.https_port}' to manage the wireless network by HTTPS",
			f"The Omada SW Controller operational logfile is '{self.operational_log}'",
			f"The MongoDB database operation logfile is '{self.database_log}'",
		]


TARGETS: dict[str, type[Target]] = {
	"omada": OmadaTarget,
}


@dataclasses.dataclass(frozen=True)
class Context:
	"""Everything a command needs, passed explicitly instead of globals."""

	config: Config
	target: Target
	console: Console
	sleep: Callable[[float], None] = time.sleep


# -----------------------------------------------------------------------------
#
# VALIDATE
#
# -----------------------------------------------------------------------------


# Function: omadactl_validate_identity USERNAME
# Resolve the run-as user and its primary group.
def omadactl_validate_identity(username: str) -> OperatingIdentity:
	try:
		pw = pwd.getpwnam(username)
	except KeyError:
		raise IdentityMissing(
			f"User '{username}' does not exist",
			remedy=f"Please create user '{username}' first with a primary group",
		) from None
	try:
		gr = grp.getgrgid(pw.pw_gid)
	except KeyError:
		raise IdentityMissing(
			f"Primary group (GID {pw.pw_gid}) of user '{username}' does not exist",
			remedy=f"Please create the primary group of user '{username}' first",
		) from None
	return OperatingIdentity(username, gr.gr_name, pw.pw_uid, pw.pw_gid)


# Function: omadactl_validate_privilege IDENTITY
# Running as a non-root identity requires root to drop privileges.
def omadactl_validate_privilege(identity: OperatingIdentity) -> None:
	if os.geteuid() != 0 and not identity.is_root:
		raise InsufficientPrivilege(
			"Your effective permissions must equate to root to use this script",
			remedy=f"Please run again as root to start as user '{identity.username}'",
		)


# Function: omadactl_validate_owned_by PATH IDENTITY
# Check that PATH (followed if a symlink) is owned by IDENTITY.
def omadactl_validate_owned_by(path: Path, identity: OperatingIdentity) -> bool:
	try:
		st = os.stat(path)
	except OSError:
		return False
	return st.st_uid == identity.uid and st.st_gid == identity.gid


# Function: omadactl_validate_chown_tree PATH IDENTITY
# Recursively change ownership, like `chown -R`.
def omadactl_validate_chown_tree(path: Path, identity: OperatingIdentity) -> None:
	os.chown(path, identity.uid, identity.gid)
	for root, dirs, files in os.walk(path):
		for name in dirs + files:
			os.chown(os.path.join(root, name), identity.uid, identity.gid, follow_symlinks=False)


# Function: omadactl_validate_directories PATHS IDENTITY
# Create missing runtime directories and fix their ownership.
def omadactl_validate_directories(
	paths: RuntimePaths, identity: OperatingIdentity
) -> list[str]:
	"""Repair data, log and work directories.

	Every failure is collected so that the operator can fix all of them in
	one pass. Returns a note for each directory that was changed.
	"""
	notes = []
	failures = []
	for directory in (paths.data_dir, paths.log_dir, paths.work_dir):
		actions = []
		if not directory.is_dir():
			try:
				directory.mkdir(mode=0o755)
				os.chmod(directory, 0o755)
			except OSError as e:
				failures.append(
					DirectoryFailure(
						directory,
						f"could not create with permissions '0755' ({e.strerror})",
						f"mkdir -m 0755 '{directory}'",
					)
				)
				continue
			actions.append("created")
		if not omadactl_validate_owned_by(directory, identity):
			try:
				omadactl_validate_chown_tree(directory, identity)
			except OSError as e:
				failures.append(
					DirectoryFailure(
						directory,
						f"could not set ownership to '{identity.owner}' ({e.strerror})",
						f"chown -R '{identity.owner}' '{directory}'",
					)
				)
				continue
			actions.append("changed ownership")
		if actions:
			notes.append(f"{directory}: {' and '.join(actions)}")
	if failures:
		raise DirectoryRepairFailed(failures)
	return notes


# Function: omadactl_validate_executable PATH IDENTITY
# Check whether IDENTITY (or the caller when None) may execute PATH.
def omadactl_validate_executable(
	path: Path, identity: Optional[OperatingIdentity] = None
) -> bool:
	if identity is None:
		return path.is_file() and os.access(path, os.X_OK)
	try:
		st = os.stat(path)
	except OSError:
		return False
	if not stat.S_ISREG(st.st_mode):
		return False
	mode = st.st_mode
	if identity.is_root:
		return bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
	if st.st_uid == identity.uid:
		return bool(mode & stat.S_IXUSR)
	if st.st_gid == identity.gid:
		return bool(mode & stat.S_IXGRP)
	return bool(mode & stat.S_IXOTH)


# Function: omadactl_validate_binaries CONFIG IDENTITY
# Check that jsvc, curl and mongod are resolved and executable.
def omadactl_validate_binaries(
	config: Config, identity: Optional[OperatingIdentity] = None
) -> list[RequiredBinary]:
	binaries = [
		RequiredBinary("jsvc", config.jsvc_bin),
		RequiredBinary("curl", config.curl_bin),
		RequiredBinary("mongod", config.mongod_bin),
	]
	for binary in binaries:
		if not binary.path:
			raise BinaryNotFound(binary.label)
		if not omadactl_validate_executable(Path(binary.path), identity):
			who = f"user '{identity.username}'" if identity else "the current user"
			raise BinaryNotExecutable(binary.label, binary.path, who)
	return binaries


# Function: omadactl_validate_symlink LINK SOURCE
# (Re)create LINK pointing at SOURCE.
def omadactl_validate_symlink(link: Path, source: str) -> Path:
	"""Replace LINK atomically so a stale or missing link never blocks startup."""
	target = Path(source)
	if link.exists() and not link.is_symlink() and link.resolve() == target.resolve():
		# The binary itself lives at the expected location
		return link
	tmp = link.with_name(f".{link.name}.{os.getpid()}")
	try:
		if tmp.is_symlink() or tmp.exists():
			tmp.unlink()
		os.symlink(target, tmp)
		os.replace(tmp, link)
	except OSError as e:
		with contextlib.suppress(OSError):
			tmp.unlink()
		if link.is_symlink() and omadactl_validate_executable(link):
			return link
		raise SymlinkRepairFailed(link, target, e.strerror or str(e)) from e
	return link


# Function: omadactl_validate_launcher_cwd CONFIG
# Probe whether this jsvc version accepts the -cwd option.
def omadactl_validate_launcher_cwd(config: Config) -> bool:
	code, _ = omadactl_util_run(
		[config.jsvc_bin, "-java-home", config.jre_home, "-cwd", "/", "-help"],
		timeout=config.probe_timeout,
	)
	return code == 0


# Function: omadactl_validate CTX
# Full pre-start validation; returns the operating identity.
def omadactl_validate(ctx: Context) -> OperatingIdentity:
	config, console = ctx.config, ctx.console
	identity = omadactl_validate_identity(config.user)
	console.log("debug", f"Running as {identity.owner} ({identity.uid}:{identity.gid})")
	omadactl_validate_privilege(identity)
	for note in omadactl_validate_directories(config.paths, identity):
		console.log("info", note)
	omadactl_validate_binaries(config, identity)
	for link, source in ctx.target.links().items():
		omadactl_validate_symlink(link, source)
	return identity


# -----------------------------------------------------------------------------
#
# LOGS
#
# -----------------------------------------------------------------------------


# Function: omadactl_logs_create_as PATH IDENTITY
# Create an empty file as IDENTITY rather than as the invoking user.
def omadactl_logs_create_as(path: Path, identity: OperatingIdentity) -> None:
	if os.geteuid() == identity.uid:
		path.touch(exist_ok=True)
		return
	result = subprocess.run(
		["touch", str(path)],
		user=identity.uid,
		group=identity.gid,
		extra_groups=[],
		stdout=subprocess.PIPE,
		stderr=subprocess.STDOUT,
		text=True,
	)
	if result.returncode != 0:
		raise OSError(result.stdout.strip() or f"touch exited with {result.returncode}")


# Function: omadactl_logs_ensure PATH IDENTITY
# Make sure a log file exists, belongs to IDENTITY and has mode 0600.
def omadactl_logs_ensure(path: Path, identity: OperatingIdentity) -> None:
	who = f"user '{identity.username}'"
	if path.is_symlink():
		raise LogCreateFailed(path, who, "is a symbolic link, refusing to follow it")
	if not path.is_file():
		try:
			omadactl_logs_create_as(path, identity)
		except OSError as e:
			raise LogCreateFailed(path, who, f"creation failed ({e})") from e
	try:
		if not stat.S_ISREG(os.lstat(path).st_mode):
			raise LogCreateFailed(path, who, "is not a regular file")
		if not omadactl_validate_owned_by(path, identity):
			os.chown(path, identity.uid, identity.gid, follow_symlinks=False)
		# Mode is set last, after any ownership change
		os.chmod(path, 0o600)
	except OSError as e:
		raise LogCreateFailed(path, who, e.strerror or str(e)) from e


# Function: omadactl_logs_prepare CTX IDENTITY
# Prepare every log file the target writes to.
def omadactl_logs_prepare(ctx: Context, identity: OperatingIdentity) -> None:
	for path in ctx.target.log_files():
		omadactl_logs_ensure(path, identity)
		ctx.console.log("debug", f"Log ready: {path}")


# -----------------------------------------------------------------------------
#
# READINESS
#
# -----------------------------------------------------------------------------


# Function: omadactl_readiness_classify HTTP_CODE
# Map an HTTP status code (0 when there was no response) to a state.
def omadactl_readiness_classify(code: int) -> ReadinessState:
	if code == 200:
		return ReadinessState.UP
	if code in (0, 500):
		return ReadinessState.TRANSITIONAL
	return ReadinessState.DOWN


# Function: omadactl_readiness_probe CTX
# Query the health endpoint once.
def omadactl_readiness_probe(ctx: Context) -> ReadinessState:
	config = ctx.config
	url = ctx.target.health_url()
	cmd = [
		config.curl_bin,
		"-m",
		str(config.probe_timeout),
		"-o",
		os.devnull,
		"-s",
		"-w",
		"%{http_code}",
		url,
	]
	_, output = omadactl_util_run(cmd, timeout=config.probe_timeout + 5)
	tokens = output.split()
	status = tokens[-1] if tokens else ""
	code = int(status) if status.isdigit() else 0
	state = omadactl_readiness_classify(code)
	ctx.console.log("debug", f"GET {url} -> {code or 'no response'} ({state.value})")
	return state


# -----------------------------------------------------------------------------
#
# PROCESS
#
# -----------------------------------------------------------------------------


# Function: omadactl_process_find MARKER PROC_ROOT
# List PIDs whose command line contains MARKER.
def omadactl_process_find(marker: str, proc_root: Path = Path("/proc")) -> list[int]:
	"""Scan /proc like `pgrep -f`, excluding the current process."""
	pids = []
	own = os.getpid()
	needle = marker.encode()
	try:
		entries = list(proc_root.iterdir())
	except OSError:
		return pids
	for entry in entries:
		if not entry.name.isdigit() or int(entry.name) == own:
			continue
		try:
			cmdline = (entry / "cmdline").read_bytes()
		except OSError:
			continue
		if needle in cmdline:
			pids.append(int(entry.name))
	return sorted(pids)


# Function: omadactl_process_is_running CTX
# Check whether the target's main class is running.
def omadactl_process_is_running(ctx: Context) -> bool:
	return bool(omadactl_process_find(ctx.target.main_class))


# Function: omadactl_process_PID_read PID_FILE
# Read PID from pidfile, return None if missing/invalid.
def omadactl_process_PID_read(pid_file: Path) -> Optional[int]:
	try:
		content = pid_file.read_text().strip()
	except OSError:
		return None
	return int(content) if content.isdigit() and int(content) > 0 else None


# Function: omadactl_process_kill PID_FILE
# Send SIGTERM to the PID recorded in PID_FILE.
def omadactl_process_kill(pid_file: Path) -> int:
	"""Forced termination.

	Only the pid file is trusted here: the process listing may match more
	than one process, or unrelated ones.
	"""
	PID = omadactl_process_PID_read(pid_file)
	if PID is None:
		raise ForcedKillFailed(pid_file, f"'{pid_file}' is missing or holds no valid PID")
	try:
		os.kill(PID, signal.SIGTERM)
	except OSError as e:
		raise ForcedKillFailed(pid_file, f"could not signal PID {PID} ({e.strerror})") from e
	return PID


# Function: omadactl_process_launcher_cmd CTX ACTION
# Build a full jsvc command line ending with ACTION.
def omadactl_process_launcher_cmd(ctx: Context, action: list[str]) -> list[str]:
	cwd_supported = omadactl_validate_launcher_cwd(ctx.config)
	return [ctx.config.jsvc_bin] + ctx.target.launcher_args(cwd_supported) + action


# Function: omadactl_process_start CTX
# Start the target and wait until it serves traffic.
def omadactl_process_start(ctx: Context) -> None:
	"""Start state machine.

	Already running and up, or already starting, are both successes and do
	not launch again. Readiness polling stops on the first Up or Down
	result; Transitional results keep it going until the attempt budget is
	exhausted.
	"""
	config, target, console = ctx.config, ctx.target, ctx.console

	if omadactl_process_is_running(ctx):
		if omadactl_readiness_probe(ctx) is ReadinessState.UP:
			console.log("info", f"'{target.description}' is already running")
			for line in target.banner():
				console.log("info", line)
		else:
			console.log("info", f"'{target.description}' is already starting up")
		return

	identity = omadactl_validate(ctx)
	omadactl_logs_prepare(ctx, identity)

	cmd = omadactl_process_launcher_cmd(ctx, [target.main_class, "start"])
	console.log("info", f"Starting '{target.description}' (Please wait)")
	console.log("debug", " ".join(cmd))
	with Tee(console, target.startup_log) as tee:
		code, _ = omadactl_util_run(cmd, timeout=config.launcher_timeout, tee=tee)
	if code != 0:
		raise StartReadinessFailed(
			target.description, target.startup_log, f"launcher exited with status {code}"
		)

	console.log("info", "Polling startup")
	result = omadactl_util_poll(
		lambda: omadactl_readiness_probe(ctx),
		done=lambda state: state is ReadinessState.UP,
		fail_fast=lambda state: state is ReadinessState.DOWN,
		attempts=config.start_attempts,
		interval=config.poll_interval,
		sleep=ctx.sleep,
		on_retry=lambda attempt: console.progress("."),
	)
	console.end_progress()
	if result.outcome is PollOutcome.FAILED:
		raise StartReadinessFailed(
			target.description, target.startup_log, "health check reports failure"
		)
	if result.outcome is PollOutcome.EXHAUSTED:
		raise StartTimeout(target.description, target.startup_log, result.attempts)
	console.log("info", f"'{target.description}' has successfully started")
	for line in target.banner():
		console.log("info", line)


# Function: omadactl_process_wait_stopped CTX
# Wait for the target to leave the process listing.
def omadactl_process_wait_stopped(ctx: Context) -> None:
	config, console = ctx.config, ctx.console
	result = omadactl_util_poll(
		lambda: omadactl_process_is_running(ctx),
		done=lambda running: not running,
		attempts=config.stop_attempts,
		interval=config.poll_interval,
		sleep=ctx.sleep,
		on_retry=lambda attempt: console.progress("."),
	)
	console.end_progress()
	if result.outcome is not PollOutcome.DONE:
		raise StopTimeout(ctx.target.description, ctx.target.operational_log, result.attempts)


# Function: omadactl_process_stop CTX
# Stop the target gracefully, killing it through its pid file on timeout.
def omadactl_process_stop(ctx: Context) -> None:
	config, target, console = ctx.config, ctx.target, ctx.console

	if not omadactl_process_is_running(ctx):
		console.log("info", f"'{target.description}' was already offline")
		return

	cmd = omadactl_process_launcher_cmd(ctx, ["-stop", target.main_class])
	console.log("info", f"Stopping '{target.description}' (Please wait)")
	console.log("debug", " ".join(cmd))
	with Tee(console, target.operational_log) as tee:
		omadactl_util_run(cmd, timeout=config.launcher_timeout, tee=tee)

	try:
		omadactl_process_wait_stopped(ctx)
	except StopTimeout as e:
		console.log("warn", f"{e} -> Going to kill it")
		PID = omadactl_process_kill(config.paths.pid_file)
		console.log("warn", f"Sent SIGTERM to PID {PID} from '{config.paths.pid_file}' (OK)")
		return
	console.log("info", f"'{target.description}' has successfully stopped")


# -----------------------------------------------------------------------------
#
# COMMANDS
#
# -----------------------------------------------------------------------------


# Function: omadactl_cmd_start CTX
def omadactl_cmd_start(ctx: Context) -> int:
	"""Start the controller."""
	omadactl_process_start(ctx)
	return EXIT_OK


# Function: omadactl_cmd_stop CTX
def omadactl_cmd_stop(ctx: Context) -> int:
	"""Stop the controller."""
	omadactl_process_stop(ctx)
	return EXIT_OK


# Function: omadactl_cmd_status CTX
# Report running, transitional or offline. Always succeeds.
def omadactl_cmd_status(ctx: Context) -> int:
	"""Show the status of the controller."""
	target, console = ctx.target, ctx.console
	if not omadactl_process_is_running(ctx):
		console.log("info", f"'{target.description}' is offline")
		return EXIT_OK
	state = omadactl_readiness_probe(ctx)
	if state is ReadinessState.UP:
		console.log("info", f"'{target.description}' is running")
		for line in target.banner():
			console.log("info", line)
	elif state is ReadinessState.TRANSITIONAL:
		console.log("info", f"'{target.description}' is in a transitional state")
	else:
		console.log("warn", f"'{target.description}' is running but its health check reports failure")
	return EXIT_OK


COMMANDS: dict[str, Callable[[Context], int]] = {
	"start": omadactl_cmd_start,
	"stop": omadactl_cmd_stop,
	"status": omadactl_cmd_status,
}

# -----------------------------------------------------------------------------
#
# CLI
#
# -----------------------------------------------------------------------------

USAGE_COMMANDS = """\
commands:
  start   - Start the service(s)
  stop    - Stop the service(s)
  status  - Show the status of the service(s)
  help    - Show this screen
"""


class OmadactlArgumentParser(argparse.ArgumentParser):
	"""ArgumentParser that reports errors with usage and exit status 1."""

	def error(self, message: str) -> NoReturn:
		self.print_usage(sys.stderr)
		sys.stderr.write(f"{self.prog}: error: {message}\n\n{USAGE_COMMANDS}")
		sys.exit(EXIT_FAILURE)


# Function: omadactl_CLI_build_parser
# Build argument parser with its single command argument.
def omadactl_CLI_build_parser() -> argparse.ArgumentParser:
	parser = OmadactlArgumentParser(
		prog="omadactl",
		description="Start, stop and check the Omada SDN controller.",
		epilog=USAGE_COMMANDS,
		formatter_class=argparse.RawDescriptionHelpFormatter,
		add_help=False,
	)
	parser.add_argument(
		"-V", "--version", action="version", version=f"omadactl {VERSION}"
	)
	parser.add_argument(
		"-c", "--config", metavar="FILE", help="Use specific config file"
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
	parser.add_argument(
		"-q", "--quiet", action="store_true", help="Suppress non-error output"
	)
	parser.add_argument(
		"--no-color", action="store_true", help="Disable colored output"
	)
	parser.add_argument(
		"command",
		choices=list(COMMANDS) + ["help"],
		metavar="start|stop|status|help",
	)
	return parser


# Function: omadactl_CLI_dispatch CTX COMMAND
# Run binary pre-flight checks, then the command handler.
def omadactl_CLI_dispatch(ctx: Context, command: str) -> int:
	handler = COMMANDS.get(command)
	if not handler:
		ctx.console.log("error", f"Unknown command: {command}")
		return EXIT_FAILURE
	try:
		# Every command needs the binaries, status included (curl)
		omadactl_validate_binaries(ctx.config)
		return handler(ctx)
	except OmadactlError as e:
		omadactl_util_report(ctx.console, e)
		return e.exit_code


# -----------------------------------------------------------------------------
#
# MAIN
#
# -----------------------------------------------------------------------------


# Function: omadactl_main
# Main entry point.
def omadactl_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point."""
	parser = omadactl_CLI_build_parser()
	args = parser.parse_args(argv)

	if args.command == "help":
		parser.print_help(sys.stderr)
		return EXIT_FAILURE

	console = Console(
		verbose=args.verbose,
		quiet=args.quiet,
		no_color=args.no_color or OMADACTL_NO_COLOR,
	)
	config = omadactl_config_load(args.config, console=console)
	target_class = TARGETS.get(config.target)
	if not target_class:
		console.log("error", f"Unknown target: {config.target}")
		return EXIT_FAILURE
	ctx = Context(config=config, target=target_class(config), console=console)

	try:
		return omadactl_CLI_dispatch(ctx, args.command)
	except KeyboardInterrupt:
		return EXIT_INTERRUPTED


if __name__ == "__main__":
	sys.exit(omadactl_main())

# EOF
