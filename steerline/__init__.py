"""steerline - chat front end that steers a running agent with mid-task messages."""

__version__ = "0.1.0"

from steerline.config import Config

__all__ = ["Config", "__version__"]
