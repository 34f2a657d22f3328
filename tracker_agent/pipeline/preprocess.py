"""Fixed preprocessing chain that turns a captured frame into an OCR-ready image."""

from PIL import Image, ImageFilter, ImageOps

# 明るい背景のアプリUI文字向けの固定しきい値
THRESHOLD = 160
DENOISE_WINDOW = 3
MAX_WIDTH = 1920


class Preprocessor:
    """グレースケール → 二値化 → メディアンフィルタ → 縮小."""

    def __init__(
        self,
        threshold: int = THRESHOLD,
        denoise_window: int = DENOISE_WINDOW,
        max_width: int | None = MAX_WIDTH,
    ) -> None:
        self.threshold = threshold
        self.denoise_window = denoise_window
        self.max_width = max_width

    def process(self, raw_frame: Image.Image) -> Image.Image:
        gray = ImageOps.grayscale(raw_frame)
        binary = gray.point(lambda p: 255 if p >= self.threshold else 0, mode="L")
        denoised = binary.filter(ImageFilter.MedianFilter(self.denoise_window))
        return self._downscale(denoised)

    def _downscale(self, image: Image.Image) -> Image.Image:
        if self.max_width is None or image.width <= self.max_width:
            return image
        height = max(1, image.height * self.max_width // image.width)
        return image.resize((self.max_width, height), Image.Resampling.LANCZOS)
