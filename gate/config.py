from dataclasses import dataclass
import os
from typing import List, Optional

from dotenv import load_dotenv


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _paths(name: str) -> Optional[List[str]]:
    """Comma-separated prefixes; None when unset, [] when set but empty."""
    raw = os.getenv(name)
    if raw is None:
        return None
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class Config:
    listen_host: str
    listen_port: int
    upstream_host: str
    upstream_port: int
    use_tls: bool
    tls_cert: str
    tls_key: str
    user_store: str
    log_path: str
    root_is_public: bool = True
    admin_paths: Optional[List[str]] = None
    user_paths: Optional[List[str]] = None
    public_paths: Optional[List[str]] = None


def load_config():
    load_dotenv(override=True)
    return Config(
        listen_host=os.getenv("GATE_LISTEN_HOST", "0.0.0.0"),
        listen_port=int(os.getenv("GATE_LISTEN_PORT", 8080)),
        upstream_host=os.getenv("GATE_UPSTREAM_HOST", "127.0.0.1"),
        upstream_port=int(os.getenv("GATE_UPSTREAM_PORT", 8000)),
        use_tls=_flag("GATE_USE_TLS", "false"),
        tls_cert=os.getenv("GATE_TLS_CERT", "server.pem"),
        tls_key=os.getenv("GATE_TLS_KEY", "server.key"),
        user_store=os.getenv("GATE_USER_STORE", ""),
        log_path=os.getenv("GATE_LOG_PATH", "gate.log"),
        root_is_public=_flag("GATE_ROOT_IS_PUBLIC", "true"),
        admin_paths=_paths("GATE_ADMIN_PATHS"),
        user_paths=_paths("GATE_USER_PATHS"),
        public_paths=_paths("GATE_PUBLIC_PATHS"),
    )
