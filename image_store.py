"""Image store: saves an uploaded file and returns its stable public id and URL."""
import logging
import os
import uuid
from typing import BinaryIO

from config import AppConfig
from schemas import Image

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}


class ImageStore:
    def __init__(self, config: AppConfig):
        self.directory = config.upload_dir
        self.base_url = config.upload_base_url.rstrip("/")

    def save(self, filename: str, stream: BinaryIO, folder: str = "payments") -> Image:
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            ext = ".jpg"
        public_id = f"{folder}/{uuid.uuid4().hex}"
        path = os.path.join(self.directory, public_id + ext)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(stream.read())
        logger.info("Stored image %s", public_id)
        return Image(public_id=public_id, url=f"{self.base_url}/{public_id}{ext}")

    def delete(self, image: Image) -> None:
        ext = os.path.splitext(image.url)[1]
        try:
            os.remove(os.path.join(self.directory, image.public_id + ext))
        except FileNotFoundError:
            return
        logger.info("Removed image %s", image.public_id)
