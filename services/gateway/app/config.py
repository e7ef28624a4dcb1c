from shared.config import ServiceSettings


class GatewaySettings(ServiceSettings):
    SERVICE_NAME: str = "api-gateway"
    PORT:         int = 8080

    USER_SERVICE_URL:    str = "http://localhost:3001"
    SMS_SERVICE_URL:     str = "http://localhost:8081"
    INSIGHT_SERVICE_URL: str = "http://localhost:8082"

    PROXY_TIMEOUT_SECONDS: float = 30.0
