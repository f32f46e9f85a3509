"""CloudForge — declarative cloud deployments driven by Terraform."""

__version__ = "0.1.0"
