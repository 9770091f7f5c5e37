from aws_lambda_powertools.utilities.parameters import (
    SSMProvider,
)
from dataclasses import (
    dataclass,
    field,
)
from os import (
    environ,
)
from typing import (
    Mapping,
    Optional,
)

from fanout.errors import (
    ConfigurationError,
)

QUEUE_URL_SUFFIX = "_QUEUE_URL"


@dataclass(frozen=True)
class Settings:
    table_name: Optional[str] = None
    bucket_name: Optional[str] = None
    log_level: str = "DEBUG"
    batch_size: int = 10
    max_receive_count: int = 5
    visibility_timeout: float = 30.0
    invocation_timeout: Optional[float] = None
    sender_email: Optional[str] = None
    base_url: Optional[str] = None
    parameter_name: Optional[str] = None
    parameter_value: Optional[str] = field(default=None, repr=False)
    queue_urls: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_environment(
        cls,
        env: Mapping[str, str] = environ,
        required: tuple = (),
        ssm_provider: Optional[SSMProvider] = None,
    ) -> "Settings":
        """
        Read configuration once at startup. CONFIG_PARAMETER_NAME, when set,
        names an SSM parameter that is fetched (decrypted) right here rather
        than on each request.
        """
        missing = [key for key in required if not env.get(key)]
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")

        parameter_name = env.get("CONFIG_PARAMETER_NAME")
        parameter_value = None
        if parameter_name:
            provider = ssm_provider or SSMProvider()
            try:
                parameter_value = provider.get(parameter_name, decrypt=True)
            except Exception as exception:
                raise ConfigurationError(
                    f"Cannot resolve parameter {parameter_name}: {exception}"
                ) from exception

        return cls(
            table_name=env.get("TABLE_NAME"),
            bucket_name=env.get("BUCKET_NAME"),
            log_level=env.get("LOG_LEVEL", "DEBUG"),
            batch_size=_number(env, "BATCH_SIZE", 10, int),
            max_receive_count=_number(env, "MAX_RECEIVE_COUNT", 5, int),
            visibility_timeout=_number(env, "VISIBILITY_TIMEOUT", 30.0, float),
            invocation_timeout=_number(env, "INVOCATION_TIMEOUT", None, float),
            sender_email=env.get("SENDER_EMAIL"),
            base_url=env.get("BASE_URL"),
            parameter_name=parameter_name,
            parameter_value=parameter_value,
            queue_urls=queue_urls(env),
        )

    def queue_url(self, route_id: str) -> str:
        try:
            return self.queue_urls[route_id]
        except KeyError:
            raise ConfigurationError(f"No queue configured for route {route_id}")


def queue_urls(env: Mapping[str, str]) -> dict:
    """NEW_SUBSCRIBER_QUEUE_URL=... becomes {"new-subscriber": ...}."""
    return {
        key[:-len(QUEUE_URL_SUFFIX)].lower().replace("_", "-"): value
        for key, value in env.items()
        if key.endswith(QUEUE_URL_SUFFIX) and value
    }


def _number(env: Mapping[str, str], key: str, default, kind):
    value = env.get(key)
    if value in (None, ""):
        return default

    try:
        return kind(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
