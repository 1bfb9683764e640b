"""Infrastructure layer — settings store, backups, host adapters, fetch, lock.

This layer depends on stdlib and third-party libs (httpx, filelock).
It may import from the domain layer (models and errors) but never from
services, commands, or output.
"""
