"""Filesystem locations and remote paths shared across jailship."""

DEFAULT_CONFIG_PATH = "deploy.yml"
MASTER_KEY_PATH = ".jailship/master.key"
SECRETS_PATH = "deploy.secrets.yml"

KEY_FILE_MODE = 0o600

CADDYFILE_PATH = "/usr/local/etc/caddy/Caddyfile"
TEMPLATE_DIR = ".templates"
RELEASES_DIR = ".releases"
JAIL_APP_DIR = "/app"
BUILD_SRC_DIR = "/build/src"
BUILD_OUT_DIR = "/build/out"
