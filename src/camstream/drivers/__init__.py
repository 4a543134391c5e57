"""Capture device drivers and configuration.

Supports two modes:
- HARDWARE: OpenCV capture devices
- DIGITAL_TWIN: simulated devices for testing without hardware

Use drivers.config to switch modes:
    from camstream.drivers import config
    config.use_digital_twin()  # or config.use_hardware()
"""

from camstream.drivers import cameras, config
from camstream.drivers.config import (
    DriverFactory,
    DriverMode,
    StreamConfig,
    configure,
    get_config,
    get_factory,
    use_digital_twin,
    use_hardware,
)

__all__ = [
    # Submodules
    "cameras",
    "config",
    # Configuration
    "DriverFactory",
    "DriverMode",
    "StreamConfig",
    "configure",
    "get_config",
    "get_factory",
    "use_digital_twin",
    "use_hardware",
]
