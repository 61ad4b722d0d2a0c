"""slarti - query and administer remote machines over SSH."""

__version__ = "0.1.0"
