"""pgwd: Postgres connection watchdog."""

__version__ = '0.3.0'
