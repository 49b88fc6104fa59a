"""Workflow testers: live recording, VOD and transcode."""

from .base import Tester
from .record import GeoOptions, RecordTester
from .transcode import TranscodeTester
from .vod import VodTester

__all__ = ["GeoOptions", "RecordTester", "Tester", "TranscodeTester", "VodTester"]
