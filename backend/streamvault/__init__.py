"""StreamVault media ingest backend.

Takes a user-uploaded video from a pre-signed direct upload through to a set
of encoded renditions and a thumbnail.

Modules:
    - core: Configuration, database, Celery, storage, logging, tracing
    - modules.media: Asset, SourceFile and Rendition records
    - modules.upload: Upload grant issuance and verification
    - modules.transcoding: Probe, encode and thumbnail pipeline
    - modules.job: Celery task base classes and retry policy
"""

__version__ = "0.1.0"
