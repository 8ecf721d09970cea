"""Application modules.

- media: Asset, SourceFile and Rendition persistence
- upload: Direct upload issuance and verification
- transcoding: FFmpeg probe/encode/thumbnail orchestration
- job: Background task base classes
"""
