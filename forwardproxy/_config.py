import yaml
from dataclasses import dataclass
from typing import Any, Mapping, NewType, Optional, Tuple

Port = NewType("Port", int)
Domain = NewType("Domain", str)

PROTOCOLS = ("http", "https")


class ConfigurationError(ValueError):
    """The configuration is unusable; the proxy must not start."""


@dataclass(frozen=True)
class Configuration:
    proto: str = "http"
    port: Port = Port(8080)
    whitelist: Tuple[str, ...] = ()
    host: str = "0.0.0.0"
    pem_path: Optional[str] = None
    key_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.proto not in PROTOCOLS:
            raise ConfigurationError(f"Protocol must be either http or https, not {self.proto!r}")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or self.port not in range(65536):
            raise ConfigurationError(f"Invalid port number: {self.port!r}")
        if self.proto == "https" and not (self.pem_path and self.key_path):
            raise ConfigurationError("https requires both pemPath and keyPath")


def parse_host_and_port(target: str) -> Tuple[Domain, Port]:
    """
    Split a CONNECT-style `host:port` string.

    IPv6 literals must be bracketed, as in `[::1]:443`.
    Raises ValueError if the string is malformed.
    """
    if target.startswith("["):
        host, bracket, rest = target[1:].partition("]")
        if not bracket or not rest.startswith(":"):
            raise ValueError(f"Malformed IPv6 target: {target!r}")
        port_string = rest[1:]
    else:
        if target.count(":") != 1:
            raise ValueError(f"Expected exactly one colon in {target!r}")
        host, port_string = target.split(":")

    if not host:
        raise ValueError(f"Missing hostname in {target!r}")
    if not port_string.isdigit() or int(port_string) not in range(1, 65536):
        raise ValueError(f"Invalid port number: {port_string!r}")
    return Domain(host), Port(int(port_string))


def parse_configuration_v1(raw: Mapping[str, Any]) -> Configuration:
    """
    Build a Configuration from the parsed YAML document.

    Keys follow the deployed config.yaml files: `proto`, `port`, `host`,
    `pemPath`, `keyPath` and `whitelist`. Unknown keys are rejected, so
    typos do not silently turn into defaults.
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Configuration must be a mapping")

    known = {"proto", "port", "host", "pemPath", "keyPath", "whitelist"}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(map(str, unknown)))}")

    whitelist = raw.get("whitelist") or []
    if isinstance(whitelist, str) or not isinstance(whitelist, list):
        raise ConfigurationError("`whitelist` must be a list of patterns")

    return Configuration(
        proto=raw.get("proto", "http"),
        port=raw.get("port", 8080),
        host=raw.get("host", "0.0.0.0"),
        pem_path=raw.get("pemPath"),
        key_path=raw.get("keyPath"),
        whitelist=tuple(whitelist),
    )


def load_configuration_from_file(path: str) -> Configuration:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Config file read error: {e}") from e

    return parse_configuration_v1(raw if raw is not None else {})
