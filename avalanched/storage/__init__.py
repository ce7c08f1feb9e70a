"""Object-store backends and the cluster path layout.

Every backend implements `avalanched.storage.store.ObjectStore`:
- `InMemoryObjectStore` for tests and the dev store service
- `S3ObjectStore` for real clusters
- `HttpObjectStore` for local clusters talking to `avalanched.storage.server`
"""
