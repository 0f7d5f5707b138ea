"""Central versioning and schema constants for the crawler."""

__all__ = ["__version__", "CONFIG_SCHEMA_VERSION"]

#: Semantic version of this codebase (bump using SemVer).
__version__ = "0.3.0"

#: Configuration schema version. Schema 1 stored timeouts and delays in
#: milliseconds; schema 2 stores them in seconds.
CONFIG_SCHEMA_VERSION = 2
