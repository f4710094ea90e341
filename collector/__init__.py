"""Collection of cloud resources: backoff, rate limiting and orchestration."""
