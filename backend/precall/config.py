"""Application configuration from environment variables."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Process mode: 'server' (HTTP API) or 'reflector' (UDP echo relay)
    mode: str = "server"
    
    # Web server port (server mode)
    web_port: int = 8000
    
    # Transport used by the controller: 'datagram' or 'loopback'
    transport: str = "datagram"
    
    # Refuse to run diagnostics at all on this host
    platform_disabled: bool = False
    
    # Connection watchdogs
    connection_timeout_seconds: float = 30.0
    negotiation_timeout_seconds: float = 10.0
    
    # Recorded connection failures before the controller gives up
    max_connection_failures: int = 10
    
    # Reflector mode: address to listen on
    reflector_host: str = "0.0.0.0"
    reflector_port: int = 3478
    
    log_level: str = "INFO"
    
    class Config:
        env_prefix = "PRECALL_"
        case_sensitive = False


settings = Settings()
