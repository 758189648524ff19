"""
Profiles module: identity resolution core.

- service.py: Profile Store (tenant-scoped CRUD, soft delete, listing)
- identifiers.py: Identifier Store (external id -> profile, attach/detach)
- resolver.py: Ingestion Resolver (single record and batch import)
- duplicates.py: Duplicate Detector (blocking, scoring, candidate persistence)
- merge.py: Merge Engine (strategies, re-pointing, forward pointers)
- scoring.py: completion score and tenant statistics
"""
