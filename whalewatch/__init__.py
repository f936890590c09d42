"""Rule-based checks for Dockerfiles and container images."""

__version__ = "0.1.0"