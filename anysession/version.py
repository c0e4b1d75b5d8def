"""anysession version information."""

__version__ = "0.3.0"
__version_info__ = (0, 3, 0)


def get_version_string() -> str:
    return f"anysession v{__version__}"
