"""stream-tester - synthetic end-to-end tester for a hosted video platform.

Drives live recording, VOD import/upload and transcode workflows against the
hosted API, verifies the produced playback manifests and reports the outcome
once or continuously with alerting.
"""

__version__ = "0.1.0"
