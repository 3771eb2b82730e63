"""Summary: Application configuration for InboxForge.

Importance: Channel credentials and quota limits resolve through one layered lookup.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for channels, storage, and limits.

    Importance: Services receive this object instead of reading the environment themselves.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    api_host: str
    api_port: int
    api_key: str
    token_secret: str
    app_url: str
    meta_app_id: str
    meta_app_secret: str
    instagram_app_id: str
    instagram_app_secret: str
    meta_graph_base_url: str
    tiktok_client_key: str
    tiktok_client_secret: str
    tiktok_token_url: str
    tiktok_api_base_url: str
    sendgrid_api_key: str
    sendgrid_api_url: str
    webhook_verify_token: str
    token_refresh_window_days: int = 7
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    http_timeout_seconds: int = 10

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Every key has a checked-in default; .env and the process environment override it.
        Alternatives: Require every variable to be exported explicitly.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("INBOXFORGE_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("INBOXFORGE_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("INBOXFORGE_API_PORT", defaults["api_port"])),
            api_key=os.getenv("INBOXFORGE_API_KEY", defaults["api_key"]),
            token_secret=os.getenv("INBOXFORGE_TOKEN_SECRET", defaults["token_secret"]),
            app_url=os.getenv("INBOXFORGE_APP_URL", defaults["app_url"]).rstrip("/"),
            meta_app_id=os.getenv("META_APP_ID", defaults["meta_app_id"]),
            meta_app_secret=os.getenv("META_APP_SECRET", defaults["meta_app_secret"]),
            instagram_app_id=os.getenv("INSTAGRAM_APP_ID", defaults["instagram_app_id"]),
            instagram_app_secret=os.getenv(
                "INSTAGRAM_APP_SECRET", defaults["instagram_app_secret"]
            ),
            meta_graph_base_url=os.getenv(
                "META_GRAPH_BASE_URL", defaults["meta_graph_base_url"]
            ).rstrip("/"),
            tiktok_client_key=os.getenv("TIKTOK_CLIENT_KEY", defaults["tiktok_client_key"]),
            tiktok_client_secret=os.getenv(
                "TIKTOK_CLIENT_SECRET", defaults["tiktok_client_secret"]
            ),
            tiktok_token_url=os.getenv("TIKTOK_TOKEN_URL", defaults["tiktok_token_url"]),
            tiktok_api_base_url=os.getenv(
                "TIKTOK_API_BASE_URL", defaults["tiktok_api_base_url"]
            ).rstrip("/"),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY", defaults["sendgrid_api_key"]),
            sendgrid_api_url=os.getenv("SENDGRID_API_URL", defaults["sendgrid_api_url"]),
            webhook_verify_token=os.getenv(
                "INBOXFORGE_WEBHOOK_VERIFY_TOKEN", defaults["webhook_verify_token"]
            ),
            token_refresh_window_days=int(
                os.getenv(
                    "INBOXFORGE_TOKEN_REFRESH_WINDOW_DAYS",
                    defaults["token_refresh_window_days"],
                )
            ),
            rate_limit_requests=int(
                os.getenv("INBOXFORGE_RATE_LIMIT_REQUESTS", defaults["rate_limit_requests"])
            ),
            rate_limit_window_seconds=int(
                os.getenv(
                    "INBOXFORGE_RATE_LIMIT_WINDOW_SECONDS",
                    defaults["rate_limit_window_seconds"],
                )
            ),
            http_timeout_seconds=int(
                os.getenv("INBOXFORGE_HTTP_TIMEOUT_SECONDS", defaults["http_timeout_seconds"])
            ),
        )

    def oauth_redirect_uri(self, platform: str) -> str:
        """Summary: Build the OAuth callback URL for a platform.

        Importance: Token exchanges must repeat the exact redirect URI used at authorization.
        Alternatives: Configure one redirect URI per platform.
        """

        return f"{self.app_url}/oauth/{platform}/callback"

    def meta_credentials(self, platform: str) -> tuple[str, str]:
        """Summary: Resolve the Meta app id and secret for a platform.

        Importance: Instagram may run under a separate Meta app.
        Alternatives: Require one Meta app for every platform.
        """

        if platform == "instagram":
            return (
                self.instagram_app_id or self.meta_app_id,
                self.instagram_app_secret or self.meta_app_secret,
            )
        return self.meta_app_id, self.meta_app_secret


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: A missing defaults file is a deployment error, not a silent fallback.
    Alternatives: Hard-code defaults as dataclass field values.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Lets local runs keep platform app secrets out of the shell history.
    Alternatives: Depend on python-dotenv.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"'))
