"""shipyard: checkout, build, push, deploy and verify container images."""

__version__ = "0.1.0"
