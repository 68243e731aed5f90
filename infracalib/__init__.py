from infracalib.calibration import InfrastructureCalibration
from infracalib.camera import Camera, PinholeCamera
from infracalib.config import CalibrationConfig
from infracalib.errors import CalibrationError, MapLoadError, NoCompleteFrameSetError
from infracalib.geometry import Pose
from infracalib.refmap import FrameID, ReferenceMap, VocabularyPlaceRecognizer
from infracalib.structures import CameraRigExtrinsics, Frame, FrameSet, Odometry

__all__ = [
    "Camera",
    "CalibrationConfig",
    "CalibrationError",
    "CameraRigExtrinsics",
    "Frame",
    "FrameID",
    "FrameSet",
    "InfrastructureCalibration",
    "MapLoadError",
    "NoCompleteFrameSetError",
    "Odometry",
    "PinholeCamera",
    "Pose",
    "ReferenceMap",
    "VocabularyPlaceRecognizer",
]
