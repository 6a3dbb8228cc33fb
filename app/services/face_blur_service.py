"""Best-effort face blur for candidate photos.

A detector is any callable taking a PIL image and returning (x, y, w, h) boxes.
Without one, or when it finds nothing, the whole image is blurred. Decode or
encode failures degrade to passthrough: ``blur`` returns None and the caller
sends the original bytes.
"""

from io import BytesIO
from typing import Callable, Iterable, Optional

from PIL import Image, ImageFilter

from app.logging_config import get_logger

logger = get_logger("face_blur_service")

Box = tuple[int, int, int, int]
FaceDetector = Callable[[Image.Image], Iterable[Box]]

FULL_IMAGE_RADIUS = 15
MIN_FACE_RADIUS = 8


class FaceBlurService:
    def __init__(self, detector: Optional[FaceDetector] = None):
        self.detector = detector
        self._diagnostic_emitted = False

    def _diagnose_once(self, error: Exception) -> None:
        if self._diagnostic_emitted:
            return
        self._diagnostic_emitted = True
        logger.warning(
            f"Face blur unavailable, sending originals: {error}",
            extra={"context": {"detector": bool(self.detector)}},
        )

    def _detect(self, image: Image.Image) -> list[Box]:
        if not self.detector:
            return []
        try:
            return [tuple(int(v) for v in box) for box in self.detector(image)]
        except Exception as e:
            logger.warning(f"Face detector failed, blurring whole image: {e}")
            return []

    def blur(self, data: bytes) -> Optional[bytes]:
        try:
            image = Image.open(BytesIO(data)).convert("RGB")
        except Exception as e:
            self._diagnose_once(e)
            return None

        faces = self._detect(image)
        if not faces:
            image = image.filter(ImageFilter.GaussianBlur(FULL_IMAGE_RADIUS))
        else:
            for x, y, w, h in faces:
                region = image.crop((x, y, x + w, y + h))
                radius = max(MIN_FACE_RADIUS, min(w, h) // 4)
                image.paste(region.filter(ImageFilter.GaussianBlur(radius)), (x, y))

        output = BytesIO()
        try:
            image.save(output, format="JPEG", quality=85)
        except Exception as e:
            self._diagnose_once(e)
            return None
        return output.getvalue()
