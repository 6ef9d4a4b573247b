"""
Core configuration management
"""
from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """mqttinfo settings"""

    # Target defaults
    default_host: str = "localhost"
    default_port: int = 1883

    # Timeouts
    dial_timeout_sec: float = 10.0
    read_timeout_sec: float = 20.0
    sys_echo_wait_sec: float = 1.0  # wait before reading a retained $SYS echo

    # Wire
    max_read_bytes: int = 100
    client_id: str = "mqttinfo"
    keep_alive_sec: int = 60

    # Output
    json_output_path: Path = Path("mqttinfo.json")

    # Paths
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"
    log_level: str = "WARNING"

    class Config:
        env_prefix = "MQTTINFO_"
        env_file = ".env"


settings = Settings()
