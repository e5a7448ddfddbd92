#!/usr/bin/env python3
"""
An MCP server that plans cosign signing runs.
Exposes the effective defaults as a resource and provides tools that render the
cosign command and container environment without executing anything.
"""

import dataclasses
import json
from pathlib import Path

from mcp.server.fastmcp import FastMCP

import cosignctl

# Initialize FastMCP server
mcp = FastMCP("Cosign Planning Server")


def _private_key(private_key_env: str):
    if not private_key_env:
        return None
    return cosignctl.Secret("private-key", env=private_key_env)


def _plan(request: cosignctl.SigningRequest, command: list[str]) -> str:
    environment = cosignctl.execution_environment(request)
    return json.dumps({"command": command, "environment": environment.describe()}, indent=2)


@mcp.resource("cosign://defaults")
def get_defaults() -> str:
    """
    Returns the settings cosignctl would use for a run on this server.
    """
    try:
        settings = cosignctl.load_settings()
    except SystemExit as e:
        return json.dumps({"error": str(e)})
    return json.dumps(dataclasses.asdict(settings))


@mcp.tool()
def plan_sign(digest: str, private_key_env: str = "", cosign_user: str = cosignctl.DEFAULT_COSIGN_USER) -> str:
    """
    Render the cosign sign command for an image digest.
    Leave private_key_env empty for keyless signing.
    """
    try:
        request = cosignctl.SigningRequest(
            digest=digest, private_key=_private_key(private_key_env), cosign_user=cosign_user
        )
        return _plan(request, cosignctl.sign_command(request))
    except Exception as e:
        return f"Error: {e!s}"


@mcp.tool()
def plan_attest(
    digest: str,
    predicate_path: str,
    sbom_type: str = cosignctl.DEFAULT_SBOM_TYPE,
    private_key_env: str = "",
    cosign_user: str = cosignctl.DEFAULT_COSIGN_USER,
) -> str:
    """
    Render the cosign attest command for an image digest and predicate file.
    """
    try:
        request = cosignctl.AttestationRequest(
            digest=digest,
            private_key=_private_key(private_key_env),
            cosign_user=cosign_user,
            predicate=Path(predicate_path) if predicate_path else None,
            sbom_type=sbom_type,
        )
        return _plan(request, cosignctl.attest_command(request))
    except Exception as e:
        return f"Error: {e!s}"


@mcp.tool()
def plan_clean(digest: str, clean_type: str = cosignctl.DEFAULT_CLEAN_TYPE) -> str:
    """
    Render the cosign clean command (signature, attestation or all).
    """
    try:
        request = cosignctl.CleanRequest(digest=digest, clean_type=clean_type)
        return _plan(request, cosignctl.clean_command(request))
    except Exception as e:
        return f"Error: {e!s}"


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
