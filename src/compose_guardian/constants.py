"""Centralized constants for Compose Guardian."""

# State store locking
LOCK_STALE_SECONDS = 30
LOCK_MAX_RETRIES = 300
LOCK_RETRY_DELAY_SECONDS = 0.1
LOCK_RETRY_JITTER_SECONDS = 0.05

# State document names (<name>.json / <name>.lock)
DOCKER_UPDATE_DOCUMENT = "docker-update-status"
SELF_CHECK_DOCUMENT = "selfcheck-status"

# Host bridge
FALLBACK_HOST_ALIAS = "host.docker.internal"
PROBE_TOKEN = "SSH connection test successful"

# Digest sentinels recorded when a digest cannot be resolved
LOCAL_DIGEST_NOT_FOUND = "local-not-found"
REMOTE_DIGEST_NOT_FOUND = "remote-not-found"

# A run/check older than this is presumed orphaned by a killed process
STALE_SELF_CHECK_SECONDS = 6 * 60 * 60
STALE_UPDATE_CHECK_SECONDS = 60 * 60

# Order matters: later scripts assume earlier ones succeeded.
DEFAULT_SELF_CHECK_SCRIPTS: tuple[str, ...] = (
    "ensure-pcs-user.sh",
    "ensure-script-executable.sh",
    "ensure-ubuntu-up-to-date.sh",
    "ensure-common-tools-installed.sh",
    "ensure-ssh.sh",
    "ensure-vm-scalable.sh",
    "ensure-qemu-agent.sh",
    "ensure-data-partition.sh",
    "ensure-data-partition-size.sh",
    "ensure-swap.sh",
    "ensure-self-check-at-reboot.sh",
    "ensure-docker-installed.sh",
    "ensure-template-version.sh",
    "ensure-user-docker-compose-updated.sh",
    "ensure-user-compose-pulled.sh",
    "ensure-user-compose-stack-up.sh",
)
