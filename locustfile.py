import io

from locust import HttpUser, between, task
from PIL import Image


def _sample_jpeg() -> bytes:
    img = Image.new("RGB", (256, 256), color=(110, 80, 50))
    buf = io.BytesIO()
    img.save(buf, format="JPEG")
    return buf.getvalue()


SAMPLE_JPEG = _sample_jpeg()


class PoultryAnalyzeUser(HttpUser):
    # Simulates farmers waiting between 1 and 3 seconds between requests
    wait_time = between(1, 3)

    @task(5)
    def analyze(self):
        # Hits the real classifier; point the service at a test key.
        self.client.post(
            "/analyze",
            files={"image": ("sample.jpg", SAMPLE_JPEG, "image/jpeg")},
        )

    @task(1)
    def health(self):
        self.client.get("/health")
