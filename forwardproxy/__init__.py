"""
A small, whitelisting HTTP forward proxy, with CONNECT tunnelling.
"""

from ._proxy import (
    Dispatcher,
    ForwardProxy,
    SynchronousForwardProxy,
)
from ._whitelist import (
    Whitelist,
    WhitelistRule,
)
from ._config import (
    Port,
    Domain,
    Configuration,
    ConfigurationError,
    parse_configuration_v1,
    load_configuration_from_file,
)
