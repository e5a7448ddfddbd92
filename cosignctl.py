#!/usr/bin/env python3
"""
cosignctl.py - Sign, attest and clean container image digests with cosign.

This script provides:
- Keyless / keyed command selection for `cosign sign`, `cosign attest` and `cosign clean`
- An ephemeral execution environment (image, user, mounted files, secret env vars)
- A Dagger backend that runs the command in a throwaway container

Notes:
- All signing work is done by the cosign binary inside the container image.
- Secrets are passed as `env:NAME` or `file:PATH` references and are only read at execution time.
- The registry password reaches cosign through a secret variable, never through argv.
"""

from __future__ import annotations

import argparse
import logging
import os
import shlex
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import anyio
import dagger
from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger("cosignctl")

DEFAULT_COSIGN_IMAGE = "chainguard/cosign:latest"
DEFAULT_COSIGN_USER = "nonroot"
DEFAULT_SBOM_TYPE = "spdxjson"
DEFAULT_CLEAN_TYPE = "all"
CLEAN_TYPES = ("signature", "attestation", "all")

KEY_PREFIX = "cosign"
PREDICATE_NAME = "sbom.json"
DOCKER_CONFIG_NAME = ".docker/config.json"
PRIVATE_KEY_REF = "env://COSIGN_PRIVATE_KEY"
REGISTRY_PASSWORD_ENV = "COSIGN_REGISTRY_PASSWORD"


# ---------------------------
# Errors
# ---------------------------

class CosignctlError(Exception):
    """Base class for cosignctl failures."""


class SecretResolutionError(CosignctlError):
    """A secret reference could not be read as plaintext."""


class ExecutionError(CosignctlError):
    """The container engine or cosign exited unsuccessfully."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# ---------------------------
# Secrets
# ---------------------------

class Secret:
    """
    Reference to a secret value held outside the request.

    The plaintext is read from its source only when plaintext() is called, so a
    request can be built, logged and rendered without touching the secret. The
    Dagger backend registers the plaintext with the engine via set_secret.
    """

    def __init__(self, name: str, *, env: Optional[str] = None, path: Optional[Path] = None,
                 value: Optional[str] = None) -> None:
        sources = [s for s in (env, path, value) if s is not None]
        if len(sources) != 1:
            raise ValueError("Secret needs exactly one of env, path or value")
        self.name = name
        self._env = env
        self._path = path
        self._value = value

    @classmethod
    def from_ref(cls, name: str, ref: str) -> "Secret":
        """
        Parse an `env:NAME` or `file:PATH` reference.
        """
        scheme, sep, target = ref.partition(":")
        if not sep or not target:
            raise ValueError(f"Invalid secret reference for {name}: expected env:NAME or file:PATH")
        if scheme == "env":
            return cls(name, env=target)
        if scheme == "file":
            return cls(name, path=Path(target))
        raise ValueError(f"Unsupported secret source '{scheme}' for {name} (use env: or file:)")

    @classmethod
    def from_value(cls, name: str, value: str) -> "Secret":
        return cls(name, value=value)

    @property
    def source(self) -> str:
        if self._env is not None:
            return f"env:{self._env}"
        if self._path is not None:
            return f"file:{self._path}"
        return "value"

    def plaintext(self) -> str:
        """
        Return the secret. A single trailing newline is dropped from file secrets.
        """
        if self._value is not None:
            return self._value
        if self._env is not None:
            try:
                return os.environ[self._env]
            except KeyError as e:
                raise SecretResolutionError(
                    f"Secret {self.name}: environment variable {self._env} is not set"
                ) from e
        if self._path is None:
            raise SecretResolutionError(f"Secret {self.name}: no source")
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise SecretResolutionError(f"Secret {self.name}: cannot read {self._path}: {e}") from e
        if text.endswith("\r\n"):
            return text[:-2]
        if text.endswith("\n"):
            return text[:-1]
        return text

    def __repr__(self) -> str:
        return f"Secret(name={self.name!r}, source={self.source!r})"


# ---------------------------
# Requests
# ---------------------------

def user_home(user: str) -> str:
    if user == "root":
        return "/root/"
    return f"/home/{user}/"


@dataclass
class SigningRequest:
    digest: str
    private_key: Optional[Secret] = None
    password: Optional[Secret] = None
    registry_username: Optional[str] = None
    registry_password: Optional[Secret] = None
    docker_config: Optional[Path] = None
    cosign_image: str = DEFAULT_COSIGN_IMAGE
    cosign_user: str = DEFAULT_COSIGN_USER

    def __post_init__(self) -> None:
        if not self.digest:
            raise ValueError("digest is required")
        if not self.cosign_image:
            raise ValueError("cosign_image must not be empty")
        if not self.cosign_user:
            raise ValueError("cosign_user must not be empty")
        # Keyless flow generates the key pair and its password in the container.
        if self.private_key is None:
            self.password = None

    @property
    def keyless(self) -> bool:
        return self.private_key is None

    @property
    def home(self) -> str:
        return user_home(self.cosign_user)


@dataclass
class AttestationRequest(SigningRequest):
    predicate: Optional[Path] = None
    sbom_type: str = DEFAULT_SBOM_TYPE

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.predicate is None:
            raise ValueError("predicate is required for attestation")
        if not self.sbom_type:
            raise ValueError("sbom_type must not be empty")


@dataclass
class CleanRequest(SigningRequest):
    clean_type: str = DEFAULT_CLEAN_TYPE

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.clean_type not in CLEAN_TYPES:
            raise ValueError(f"clean_type must be one of {', '.join(CLEAN_TYPES)}, got {self.clean_type!r}")


# ---------------------------
# Command builder
# ---------------------------

def resolve_registry_credentials(request: SigningRequest) -> Optional[Tuple[str, str]]:
    """
    Return (username, plaintext password) when both are supplied.

    A lone username or password is dropped. Resolution errors propagate unchanged.
    """
    username = request.registry_username
    secret = request.registry_password
    if username is None and secret is None:
        return None
    if username is None or secret is None:
        logger.warning("Ignoring registry credentials: both username and password are required")
        return None
    return username, secret.plaintext()


def registry_flags(credentials: Optional[Tuple[str, str]]) -> str:
    """
    Shell fragment with the registry flags. The password is expanded from
    REGISTRY_PASSWORD_ENV inside the container.
    """
    if credentials is None:
        return ""
    return ' --registry-username {} --registry-password "${}"'.format(
        shlex.quote(credentials[0]), REGISTRY_PASSWORD_ENV
    )


def shell_script(stage: List[str], credentials: Optional[Tuple[str, str]]) -> str:
    return shlex.join(stage) + registry_flags(credentials)


def keyless_command(request: SigningRequest, stage: List[str],
                    credentials: Optional[Tuple[str, str]] = None) -> List[str]:
    """
    Wrap a cosign invocation so a fresh key pair is generated in the user's home first.
    """
    prefix = request.home + KEY_PREFIX
    script = "COSIGN_EXPERIMENTAL=1 cosign generate-key-pair --output-key-prefix {} && {}".format(
        shlex.quote(prefix), shell_script(stage, credentials)
    )
    return ["sh", "-c", script]


def _key_args(request: SigningRequest) -> List[str]:
    if request.keyless:
        return ["--key", request.home + KEY_PREFIX + ".key"]
    return ["--key", PRIVATE_KEY_REF]


def _single_stage(stage: List[str], credentials: Optional[Tuple[str, str]]) -> List[str]:
    if credentials is None:
        return stage
    return ["sh", "-c", shell_script(stage, credentials)]


def _finish(request: SigningRequest, stage: List[str], credentials: Optional[Tuple[str, str]]) -> List[str]:
    if request.keyless:
        return keyless_command(request, stage, credentials)
    return _single_stage(stage, credentials)


def sign_command(request: SigningRequest, credentials: Optional[Tuple[str, str]] = None) -> List[str]:
    stage = ["cosign", "sign", request.digest] + _key_args(request)
    return _finish(request, stage, credentials)


def attest_command(request: AttestationRequest, credentials: Optional[Tuple[str, str]] = None) -> List[str]:
    stage = [
        "cosign",
        "attest",
        "--type",
        request.sbom_type,
        "--predicate",
        request.home + PREDICATE_NAME,
        request.digest,
    ] + _key_args(request)
    return _finish(request, stage, credentials)


def clean_command(request: CleanRequest, credentials: Optional[Tuple[str, str]] = None) -> List[str]:
    """
    Clean never needs a key, so it is always a single cosign invocation.
    """
    stage = ["cosign", "clean", "--type", request.clean_type, "--force", request.digest]
    return _single_stage(stage, credentials)


# ---------------------------
# Execution environment
# ---------------------------

@dataclass
class MountedFile:
    source: Path
    target: str
    owner: str


@dataclass
class ExecutionEnvironment:
    image: str
    user: str
    env: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, Secret] = field(default_factory=dict)
    mounts: List[MountedFile] = field(default_factory=list)

    def describe(self) -> Dict[str, Any]:
        """
        A log-safe view: secret variables by name and source only.
        """
        return {
            "image": self.image,
            "user": self.user,
            "env": dict(self.env),
            "secrets": {name: secret.source for name, secret in self.secrets.items()},
            "mounts": [{"source": str(m.source), "target": m.target, "owner": m.owner} for m in self.mounts],
        }


def random_password() -> Secret:
    return Secret.from_value("password", str(time.time_ns()))


def execution_environment(request: SigningRequest,
                          credentials: Optional[Tuple[str, str]] = None) -> ExecutionEnvironment:
    environment = ExecutionEnvironment(image=request.cosign_image, user=request.cosign_user)
    environment.env["COSIGN_YES"] = "true"

    environment.secrets["COSIGN_PASSWORD"] = request.password or random_password()
    if request.private_key is not None:
        environment.secrets["COSIGN_PRIVATE_KEY"] = request.private_key
    if credentials is not None:
        environment.secrets[REGISTRY_PASSWORD_ENV] = Secret.from_value("registry-password", credentials[1])

    home = request.home
    if request.docker_config is not None:
        environment.mounts.append(MountedFile(request.docker_config, home + DOCKER_CONFIG_NAME, request.cosign_user))
    predicate = getattr(request, "predicate", None)
    if predicate is not None:
        environment.mounts.append(MountedFile(predicate, home + PREDICATE_NAME, request.cosign_user))
    return environment


# ---------------------------
# Execution backend
# ---------------------------

class ExecutionBackend(Protocol):
    def run(self, environment: ExecutionEnvironment, command: List[str]) -> str: ...


class DaggerBackend:
    """
    Run commands in a throwaway container on the Dagger engine.
    """

    def __init__(self, timeout: Optional[float] = None, log_output: Any = None) -> None:
        self.timeout = timeout
        self.log_output = log_output

    def container(self, client: Any, environment: ExecutionEnvironment, command: List[str],
                  plaintexts: Dict[str, str]) -> Any:
        container = client.container().from_(environment.image).with_user(environment.user)
        for name, value in environment.env.items():
            container = container.with_env_variable(name, value)
        for name, value in plaintexts.items():
            container = container.with_secret_variable(name, client.set_secret(name, value))
        for mount in environment.mounts:
            source = client.host().file(str(mount.source))
            container = container.with_mounted_file(mount.target, source, owner=mount.owner)
        return container.with_exec(command)

    async def run_async(self, environment: ExecutionEnvironment, command: List[str]) -> str:
        # Resolve before connecting so a missing secret never reaches the engine.
        plaintexts = {name: secret.plaintext() for name, secret in environment.secrets.items()}
        config = dagger.Config(log_output=self.log_output)
        try:
            with anyio.fail_after(self.timeout):
                async with dagger.Connection(config) as client:
                    return await self.container(client, environment, command, plaintexts).stdout()
        except dagger.ExecError as e:
            raise ExecutionError(e.stderr or str(e), returncode=e.exit_code, stderr=e.stderr) from e
        except dagger.DaggerError as e:
            raise ExecutionError(str(e)) from e
        except TimeoutError as e:
            raise ExecutionError(f"Dagger run timed out after {self.timeout}s") from e

    def run(self, environment: ExecutionEnvironment, command: List[str]) -> str:
        logger.debug("Container environment: %s", environment.describe())
        return anyio.run(self.run_async, environment, command)


# ---------------------------
# Operations
# ---------------------------

def _execute(request: SigningRequest, command: List[str], credentials: Optional[Tuple[str, str]],
             backend: Optional[ExecutionBackend]) -> str:
    logger.debug("cosign command: %s", shlex.join(command))
    environment = execution_environment(request, credentials)
    if backend is None:
        backend = DaggerBackend()
    return backend.run(environment, command)


def sign(request: SigningRequest, backend: Optional[ExecutionBackend] = None) -> str:
    """
    Sign request.digest. Keyless when no private key is supplied.
    """
    credentials = resolve_registry_credentials(request)
    logger.info("Signing %s (%s)", request.digest, "keyless" if request.keyless else "keyed")
    return _execute(request, sign_command(request, credentials), credentials, backend)


def attest(request: AttestationRequest, backend: Optional[ExecutionBackend] = None) -> str:
    """
    Attach request.predicate to request.digest as a `request.sbom_type` attestation.
    """
    credentials = resolve_registry_credentials(request)
    logger.info("Attesting %s with %s predicate", request.digest, request.sbom_type)
    return _execute(request, attest_command(request, credentials), credentials, backend)


def clean(request: CleanRequest, backend: Optional[ExecutionBackend] = None) -> str:
    credentials = resolve_registry_credentials(request)
    logger.info("Cleaning %s from %s", request.clean_type, request.digest)
    return _execute(request, clean_command(request, credentials), credentials, backend)


# ---------------------------
# Settings
# ---------------------------

@dataclass
class Settings:
    image: str = DEFAULT_COSIGN_IMAGE
    user: str = DEFAULT_COSIGN_USER
    timeout: Optional[float] = None
    log_level: str = "WARNING"


def parse_timeout(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        timeout = float(value)
    except ValueError as e:
        raise SystemExit(f"Invalid timeout: {value!r}") from e
    if timeout <= 0:
        raise SystemExit(f"Invalid timeout: {value!r} (must be positive)")
    return timeout


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """
    Read defaults from COSIGNCTL_* environment variables.
    """
    if env is None:
        load_dotenv(find_dotenv(usecwd=True))
        env = dict(os.environ)
    log_level = (env.get("COSIGNCTL_LOG_LEVEL") or "WARNING").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise SystemExit(f"Invalid log level: {log_level!r}")
    return Settings(
        image=env.get("COSIGNCTL_IMAGE") or DEFAULT_COSIGN_IMAGE,
        user=env.get("COSIGNCTL_USER") or DEFAULT_COSIGN_USER,
        timeout=parse_timeout(env.get("COSIGNCTL_TIMEOUT")),
        log_level=log_level,
    )


def configure_logging(level: str) -> None:
    if logger.handlers:
        logger.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)


# ---------------------------
# Commands
# ---------------------------

def _secret_arg(name: str, ref: Optional[str]) -> Optional[Secret]:
    if ref is None:
        return None
    try:
        return Secret.from_ref(name, ref)
    except ValueError as e:
        raise SystemExit(str(e)) from e


def _existing_file(path: Optional[str], what: str) -> Optional[Path]:
    if path is None:
        return None
    p = Path(path)
    if not p.is_file():
        raise SystemExit(f"{what} not found: {p}")
    return p


def _request_kwargs(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "digest": args.digest,
        "private_key": _secret_arg("private-key", args.private_key),
        "password": _secret_arg("password", args.password),
        "registry_username": args.registry_username,
        "registry_password": _secret_arg("registry-password", args.registry_password),
        "docker_config": _existing_file(args.docker_config, "Docker config"),
        "cosign_image": args.cosign_image or args.settings.image,
        "cosign_user": args.cosign_user or args.settings.user,
    }


def _run(args: argparse.Namespace, request: SigningRequest, render, operation) -> int:
    if args.dry_run:
        credentials = resolve_registry_credentials(request)
        print(shlex.join(render(request, credentials)))
        return 0
    backend = DaggerBackend(timeout=args.timeout, log_output=sys.stderr if args.verbose else None)
    output = operation(request, backend)
    sys.stdout.write(output)
    return 0


def cmd_sign(args: argparse.Namespace) -> int:
    request = SigningRequest(**_request_kwargs(args))
    return _run(args, request, sign_command, sign)


def cmd_attest(args: argparse.Namespace) -> int:
    request = AttestationRequest(
        **_request_kwargs(args),
        predicate=_existing_file(args.predicate, "Predicate"),
        sbom_type=args.type,
    )
    return _run(args, request, attest_command, attest)


def cmd_clean(args: argparse.Namespace) -> int:
    request = CleanRequest(**_request_kwargs(args), clean_type=args.type)
    return _run(args, request, clean_command, clean)


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("digest", help="Container image digest, e.g. registry.example.com/app@sha256:...")
    p.add_argument("--private-key", help="Cosign private key as env:NAME or file:PATH (omit for keyless)")
    p.add_argument("--password", help="Private key password as env:NAME or file:PATH (random if omitted)")
    p.add_argument("--registry-username", help="Registry username")
    p.add_argument("--registry-password", help="Registry password as env:NAME or file:PATH")
    p.add_argument("--docker-config", help="Path to a Docker config.json to mount into the container")
    p.add_argument("--cosign-image", help=f"Cosign container image (default: {DEFAULT_COSIGN_IMAGE})")
    p.add_argument("--cosign-user", help=f"Cosign container user (default: {DEFAULT_COSIGN_USER})")
    p.add_argument("--dry-run", action="store_true", help="Print the cosign command instead of running it")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cosignctl.py")
    p.add_argument("--timeout", help="Execution timeout in seconds")
    p.add_argument("-v", "--verbose", action="store_true", help="Log debug and Dagger output to stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_sign = sub.add_parser("sign", help="Sign an image digest")
    _add_common(p_sign)
    p_sign.set_defaults(func=cmd_sign)

    p_att = sub.add_parser("attest", help="Attest an SBOM predicate for an image digest")
    _add_common(p_att)
    p_att.add_argument("--predicate", required=True, help="Path to the SBOM / predicate file")
    p_att.add_argument("--type", default=DEFAULT_SBOM_TYPE, help="Predicate type (default: spdxjson)")
    p_att.set_defaults(func=cmd_attest)

    p_clean = sub.add_parser("clean", help="Remove signatures and/or attestations for an image digest")
    _add_common(p_clean)
    p_clean.add_argument("--type", default=DEFAULT_CLEAN_TYPE, choices=list(CLEAN_TYPES))
    p_clean.set_defaults(func=cmd_clean)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    configure_logging("DEBUG" if args.verbose else settings.log_level)
    args.settings = settings
    args.timeout = parse_timeout(args.timeout) if args.timeout is not None else settings.timeout

    try:
        return int(args.func(args))
    except ValueError as e:
        raise SystemExit(str(e)) from e
    except SecretResolutionError as e:
        print(f"[FAIL] {e}", file=sys.stderr)
        return 2
    except ExecutionError as e:
        if e.stderr:
            sys.stderr.write(e.stderr)
        else:
            print(f"[FAIL] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
