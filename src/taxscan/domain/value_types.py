from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
Topic   = NewType("Topic", str)     # 66-char 0x-hash
JobStatus = Literal["active", "stopped", "completed", "failed"]
ChunkFailurePolicy = Literal["skip", "abort"]
AttributionMode = Literal["receipt", "intersection"]
LaunchSource = Literal["market", "chain"]
