"""Settings, logging and metrics shared by the worker."""
