"""Shell quoting helpers for remote command lines."""

import shlex
from typing import Mapping


def quote(value) -> str:
    return shlex.quote(str(value))


def env_assignments(env: Mapping[str, str]) -> str:
    return " ".join(f"{key}={quote(value)}" for key, value in env.items())


def app_script(command: str, env: Mapping[str, str], app_dir: str = "/app") -> str:
    """Builds `cd <app_dir> && [ENV=...] <command>` for execution inside a jail."""
    assignments = env_assignments(env)
    if assignments:
        return f"cd {app_dir} && {assignments} {command}"
    return f"cd {app_dir} && {command}"


def jexec(jail_name: str, script: str) -> str:
    return f"jexec {jail_name} /bin/sh -c {quote(script)}"
