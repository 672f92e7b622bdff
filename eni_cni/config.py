"""Plugin configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Plugin settings loaded from environment variables."""

    # Instance metadata service
    imds_url: str = "http://169.254.169.254/latest"
    imds_timeout: float = 2.0  # seconds per request
    imds_token_ttl: int = 300  # seconds

    # Per-container working directories live under here as cni-<id8>
    state_root: str = "/tmp"

    # Named namespace handles (what `ip netns` resolves)
    netns_dir: str = "/var/run/netns"

    # Diagnostic log sink
    log_file: str = "/var/log/nomad/cni.log"
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # ENI creation
    security_group_ids: list[str] = []
    eni_name_tag: str = "NomadSecENI"
    default_ifname: str = "eth1"

    # CNI protocol
    cni_version: str = "0.3.1"
    supported_versions: list[str] = ["0.3.0", "0.3.1", "0.4.0", "1.0.0"]

    # Host-wide lock around device-index allocation and attach
    lock_path: str = "/var/run/eni-cni.lock"
    lock_timeout: float = 60.0

    # Readiness waits and retries (seconds / attempts)
    attach_timeout: float = 30.0
    attach_retries: int = 3
    detach_timeout: float = 60.0
    delete_retries: int = 5
    poll_interval: float = 0.5
    poll_max_interval: float = 5.0

    # iproute2
    ip_binary: str = "ip"
    command_timeout: int = 30

    class Config:
        env_prefix = "ENI_CNI_"


class CNIEnvironment(BaseSettings):
    """Invocation parameters passed by the container runtime."""

    command: str = ""
    containerid: str = ""
    netns: str = ""
    ifname: str = ""
    args: str = ""
    path: str = ""

    class Config:
        env_prefix = "CNI_"


settings = Settings()
