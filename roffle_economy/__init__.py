"""roffle-economy — wheel mini-game economy engine."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("roffle-economy")
except PackageNotFoundError:
    __version__ = "0.0.0"
