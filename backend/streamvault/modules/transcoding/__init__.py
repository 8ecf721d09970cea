"""Transcoding module.

Probes uploaded source files with ffprobe, encodes one rendition per
configured profile with ffmpeg, grabs a thumbnail and publishes the results
to object storage.
"""
