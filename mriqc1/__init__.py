"""Run mriqc one participant at a time, in parallel."""

__version__ = '0.2.0'
