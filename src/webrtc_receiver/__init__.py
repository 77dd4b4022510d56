# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

from .media_pipeline import MediaPipelineController, PipelineBuildError, PipelineHandle
from .shared_state import EventLog, FrameCell, VideoFrame
from .track_router import ChainBuildError, TrackKind

__version__ = "0.1.0"
