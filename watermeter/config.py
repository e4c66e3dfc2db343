"""Water Meter Server Configuration."""

import secrets
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    server_name: str = "Water Meter Server"
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    log_level: str = "INFO"

    # Paths
    data_dir: Path = Path.home() / "watermeter" / "data"

    # Database
    db_path: Path = Path.home() / "watermeter" / "data" / "watermeter.db"
    db_busy_timeout: float = 15.0  # seconds
    tx_max_retries: int = 3
    tx_retry_backoff: float = 0.05  # seconds, multiplied by attempt number

    # JWT
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 hours

    # Money: amounts are stored as integers of 10**-amount_scale units
    amount_scale: int = 2
    max_amount: int = 1_000_000_000  # major units, per token or usage report

    # Tokens and API keys
    token_length: int = 20
    token_issue_attempts: int = 5
    api_key_prefix: str = "sk_"

    # Device-facing endpoints
    device_api_key_required: bool = True
    device_online_seconds: int = 300  # 5 minutes

    # MQTT
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_use_tls: bool = False
    mqtt_client_id: str = ""
    mqtt_keepalive: int = 60
    mqtt_qos: int = 1
    mqtt_topic_prefix: str = "water-meter"
    mqtt_workers: int = 4

    model_config = {"env_prefix": "WATERMETER_"}

    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)

    def ensure_secrets(self) -> None:
        """Generate secrets if not set, persist to file so they survive restarts."""
        secrets_file = self.data_dir / ".secrets"
        saved = {}
        if secrets_file.exists():
            for line in secrets_file.read_text().strip().splitlines():
                if "=" in line:
                    k, v = line.split("=", 1)
                    saved[k.strip()] = v.strip()

        if not self.jwt_secret:
            self.jwt_secret = saved.get("jwt_secret", "") or secrets.token_urlsafe(32)
        if not self.mqtt_client_id:
            self.mqtt_client_id = saved.get("mqtt_client_id", "") or f"wm_backend_{secrets.token_hex(4)}"

        # Persist for next restart
        secrets_file.write_text(
            f"jwt_secret={self.jwt_secret}\nmqtt_client_id={self.mqtt_client_id}\n"
        )


settings = Settings()
settings.ensure_dirs()
settings.ensure_secrets()
