"""Actionable error catalog for jailship."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "connection_refused": {
        "what": "SSH connection to {target} failed: connection refused.",
        "next": "Check that sshd is running on the server and listening on the configured port.",
    },
    "connection_timeout": {
        "what": "SSH connection to {target} failed: connection timed out.",
        "next": "Check the host address, firewall rules and network connectivity.",
    },
    "host_not_found": {
        "what": "SSH connection to {target} failed: host not found.",
        "next": "Check the `server.host` value in your deploy configuration.",
    },
    "authentication_failed": {
        "what": "SSH authentication to {target} failed.",
        "next": "Load your key into ssh-agent or place it under ~/.ssh/ and authorize it on the server.",
    },
    "connection_failed": {
        "what": "SSH connection to {target} failed: {reason}.",
        "next": "Check your SSH key at ~/.ssh/ and the server configuration.",
    },
    "no_active_jail": {
        "what": "No active jail found for {app}.",
        "next": "Run `jailship deploy` first.",
    },
    "rollback_target_missing": {
        "what": "Previous jail {name} does not exist on the server.",
        "next": "Rollback requires a jail preserved by an earlier deploy. Run a new deploy instead.",
    },
    "health_check_failed": {
        "what": "Health check failed after {attempts} attempts: {url}.",
        "next": "Check that the app starts correctly, listens on the configured port and binds to 0.0.0.0.",
    },
    "secrets_key_missing": {
        "what": "Found {secrets_path} but no master key at {key_path}.",
        "next": "Restore your master key or run `jailship secrets init` to create a new one.",
    },
    "secrets_file_missing": {
        "what": "Found master key at {key_path} but no secrets file at {secrets_path}.",
        "next": "Run `jailship secrets init` to create the secrets file.",
    },
    "build_jail_missing": {
        "what": "Build jail {name} not found on the server.",
        "next": "Run `jailship setup` first, or set `release.builder: local` to build on this machine.",
    },
    "master_key_exists": {
        "what": "Master key already exists at {key_path}.",
        "next": "Delete it first if you really want to re-initialize secrets.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
