from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nback-task")
except PackageNotFoundError:
    __version__ = "unknown"
