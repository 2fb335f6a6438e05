"""Configuration for the NDB Cluster metrics exporter"""
import socket
from pathlib import Path
from typing import Dict, List, Optional, Literal
from pydantic import Field, validator
from pydantic_settings import BaseSettings
from metrics.models import ExportFormat


class Config(BaseSettings):
    """Configuration with Pydantic validation and environment-based settings"""

    # Database connection
    mysql_host: str = Field(default="127.0.0.1", description="MySQL server (SQL node) host")
    mysql_port: int = Field(default=3306, ge=1, le=65535, description="MySQL server port")
    mysql_user: str = Field(default="exporter", description="MySQL user")
    mysql_password: str = Field(default="", description="MySQL password")
    mysql_database: str = Field(default="ndbinfo", description="Default schema for the connection")
    mysql_connect_timeout: int = Field(default=5, ge=1, description="Connect timeout in seconds")
    mysql_read_timeout: int = Field(default=10, ge=1, description="Socket read/write timeout in seconds")

    # Scrape harness
    collection_interval: int = Field(default=30, ge=1, description="Collection interval in seconds")
    scrape_timeout: float = Field(default=10.0, gt=0, description="Deadline for one scrape cycle in seconds")
    pool_size: int = Field(default=4, ge=1, le=64, description="Maximum concurrent database connections")
    pool_acquire_timeout: float = Field(default=5.0, gt=0, description="Wait for a free connection in seconds")
    fetch_batch_size: int = Field(default=500, ge=1, description="Rows fetched per round trip")
    target_version: Optional[float] = Field(default=None, description="Skip version detection and use this version")
    scraper_definitions: Optional[Path] = Field(default=None, description="YAML file with scraper definitions")
    enabled_scrapers_str: str = Field(
        default="",
        description="Enabled scrapers (comma-separated, empty for all)"
    )
    metric_namespace: str = Field(default="ndb", description="Namespace prefix of exporter metrics")

    # Export configuration - mutually exclusive formats
    export_format: ExportFormat = Field(default=ExportFormat.PROMETHEUS, description="Export format (prometheus or otlp)")
    prometheus_file: Path = Field(default=Path("/tmp/ndb-exporter/metrics.prom"), description="Prometheus textfile path")
    otlp_endpoint: Optional[str] = Field(default=None, validate_default=True, description="OTLP gRPC endpoint")
    otlp_insecure: bool = Field(default=True, description="Use insecure OTLP connection")
    otlp_headers_str: str = Field(default="", description="OTLP headers (key=value, comma-separated)")

    # Service settings
    service_name: str = Field(default="ndb-metrics-exporter", description="Service name")
    service_version: str = Field(default="1.0.0", description="Service version")
    instance_id: str = Field(default="", description="Override instance ID")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO", description="Log level")
    log_file: Optional[Path] = Field(default=None, description="Log file (console only when unset)")

    class Config:
        env_prefix = ""
        case_sensitive = False

    @validator('log_level', pre=True)
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @validator('otlp_endpoint')
    def validate_otlp_endpoint(cls, v, values):
        """OTLP endpoint is required when OTLP export is selected"""
        if values.get('export_format') == ExportFormat.OTLP and not v:
            raise ValueError("OTLP_ENDPOINT must be set when export_format is 'otlp'")
        return v

    @validator('prometheus_file', 'log_file')
    def ensure_parent_directories(cls, v):
        """Ensure parent directories exist for file paths"""
        if isinstance(v, Path):
            v.parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def enabled_scrapers(self) -> List[str]:
        """Get enabled scrapers as a list"""
        return [item.strip() for item in self.enabled_scrapers_str.split(',') if item.strip()]

    @property
    def otlp_headers(self) -> Dict[str, str]:
        """Parse OTLP headers from "key=value,key2=value2" """
        headers = {}
        for header in self.otlp_headers_str.split(','):
            if '=' in header:
                key, value = header.split('=', 1)
                headers[key.strip()] = value.strip()
        return headers

    def is_scraper_enabled(self, scraper_name: str) -> bool:
        """An empty list enables every scraper"""
        enabled = self.enabled_scrapers
        return not enabled or scraper_name in enabled

    def is_prometheus_format(self) -> bool:
        return self.export_format == ExportFormat.PROMETHEUS

    def is_otlp_format(self) -> bool:
        return self.export_format == ExportFormat.OTLP

    def get_instance_id(self) -> str:
        """Configured instance ID or <hostname>:<mysql_host>:<mysql_port>"""
        if self.instance_id:
            return self.instance_id
        return f"{socket.gethostname()}:{self.mysql_host}:{self.mysql_port}"

    def get_otlp_resource_attributes(self) -> Dict[str, str]:
        """Get OTLP resource attributes"""
        return {
            "service.name": self.service_name,
            "service.version": self.service_version,
            "service.instance.id": self.get_instance_id(),
            "db.system": "mysql",
            "server.address": self.mysql_host,
        }
