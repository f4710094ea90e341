"""Project version constants.

These constants are used in logs and in the run summary so that collected
resources and observations can be traced back to a specific engine/ruleset
version.
"""

ENGINE_NAME: str = "modron"
ENGINE_VERSION: str = "0.1.0"

RULEPACK_VERSION: str = "0.1.0"
SCHEMA_VERSION: int = 1
