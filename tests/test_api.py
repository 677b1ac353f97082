"""End-to-end tests for the FastAPI application.

These tests exercise every route through the FastAPI TestClient. Each
test gets its own application built by ``create_app()`` against a store
directory under ``tmp_path``, so uploads and the in-memory dedup index
never leak between tests.
"""

import base64
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image, ImageChops

from conftest import make_image


@pytest.fixture
def image_dir(tmp_path, monkeypatch):
    """Point the store at a sandboxed directory via environment variables."""
    image_dir = tmp_path / "uploads"
    monkeypatch.setenv("IMAGE_STORE_DIR", str(image_dir))
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://testserver/api")
    return image_dir


@pytest.fixture
def client(image_dir):
    from main import create_app

    return TestClient(create_app())


def _upload(client, data, name="photo.png", content_type="image/png"):
    return client.post("/upload", files={"image": (name, data, content_type)})


def test_upload_returns_identifier_and_url(client, image_dir):
    resp = _upload(client, make_image())
    assert resp.status_code == 200, resp.text
    payload = resp.json()
    assert payload["message"] == "Image uploaded successfully"
    assert payload["filePath"].endswith("-photo.png")
    assert payload["imageUrl"] == f"http://testserver/api/images/{payload['filePath']}"
    assert payload["duplicate"] is False
    assert (image_dir / payload["filePath"]).is_file()


def test_upload_twice_is_deduplicated(client, image_dir):
    data = make_image()
    first = _upload(client, data, "one.png").json()
    second = _upload(client, data, "two.png").json()
    assert second["filePath"] == first["filePath"]
    assert second["duplicate"] is True
    assert [p.name for p in image_dir.iterdir() if not p.name.startswith(".")] == [first["filePath"]]


def test_upload_without_file_is_rejected(client):
    resp = client.post("/upload", data={"something": "else"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No file uploaded"}


def test_get_image_returns_bytes(client):
    data = make_image()
    identifier = _upload(client, data).json()["filePath"]
    resp = client.get(f"/images/{identifier}")
    assert resp.status_code == 200
    assert resp.content == data
    assert resp.headers["content-type"].startswith("image/png")
    assert resp.headers["cache-control"] == "no-cache"


def test_get_missing_image_is_404(client):
    resp = client.get("/images/nope.jpg")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Image not found"}


@pytest.mark.parametrize("name", [".staging", ".hidden.png"])
def test_get_dot_prefixed_name_is_404(client, name):
    resp = client.get(f"/images/{name}")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Image not found"}


def test_annotate_changes_only_the_label_area(client):
    original = make_image((200, 100))
    identifier = _upload(client, original, "x.png").json()["filePath"]

    resp = client.post("/annotate", json={"imageId": identifier, "text": "Hi", "x": 50, "y": 50})
    assert resp.status_code == 200, resp.text
    assert resp.json()["message"] == "Image annotated successfully"
    assert resp.json()["imageUrl"].endswith(f"/images/{identifier}")

    updated = client.get(f"/images/{identifier}").content
    img = Image.open(io.BytesIO(updated))
    assert img.size == (200, 100)
    bbox = ImageChops.difference(
        Image.open(io.BytesIO(original)).convert("RGB"), img.convert("RGB")
    ).getbbox()
    assert bbox is not None
    assert bbox[0] >= 50 and bbox[1] >= 8 and bbox[2] <= 96 and bbox[3] <= 50


def test_annotate_jpeg_changes_little_outside_the_label(client):
    # JPEG is re-encoded as a whole, so pixels outside the box may shift by
    # a few levels; blocks straddling the box edge are excluded.
    original = make_image((200, 100), fmt="JPEG", color=(200, 200, 200))
    identifier = _upload(client, original, "x.jpg", "image/jpeg").json()["filePath"]

    resp = client.post("/annotate", json={"imageId": identifier, "text": "Hi", "x": 50, "y": 50})
    assert resp.status_code == 200, resp.text

    img = Image.open(io.BytesIO(client.get(f"/images/{identifier}").content))
    assert img.format == "JPEG"
    assert img.size == (200, 100)
    before = Image.open(io.BytesIO(original)).convert("RGB")
    after = img.convert("RGB")
    # Inside the box, the backing darkens the base.
    assert all(c < 180 for c in after.getpixel((53, 47)))

    diff = ImageChops.difference(before, after)
    left, top, right, bottom = 50, 8, 96, 50
    diff.paste((0, 0, 0), (left - 16, max(0, top - 16), right + 16, bottom + 16))
    assert max(high for _, high in diff.getextrema()) <= 8


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"imageId": "x.png", "text": "Hi", "x": 1},
        {"imageId": "x.png", "x": 1, "y": 1},
        {"text": "Hi", "x": 1, "y": 1},
    ],
)
def test_annotate_missing_fields(client, body):
    resp = client.post("/annotate", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": "imageId, text, x and y are required."}


def test_annotate_accepts_zero_coordinates(client):
    identifier = _upload(client, make_image()).json()["filePath"]
    resp = client.post("/annotate", json={"imageId": identifier, "text": "Hi", "x": 0, "y": 0})
    assert resp.status_code == 200, resp.text


def test_annotate_rejects_non_numeric_coordinates(client):
    resp = client.post("/annotate", json={"imageId": "x.png", "text": "Hi", "x": "left", "y": 3})
    assert resp.status_code == 400
    assert resp.json() == {"error": "x and y must be numbers."}


def test_annotate_missing_image_is_404(client):
    resp = client.post("/annotate", json={"imageId": "ghost.png", "text": "Hi", "x": 1, "y": 1})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Image not found"}


def test_annotate_corrupt_image_reports_details(client, image_dir):
    (image_dir / "broken.png").write_bytes(b"not an image")
    resp = client.post("/annotate", json={"imageId": "broken.png", "text": "Hi", "x": 1, "y": 1})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Error annotating image"
    assert body["details"]
    assert (image_dir / "broken.png").read_bytes() == b"not an image"


def test_malformed_json_body_is_rejected(client):
    resp = client.post("/annotate", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Request body must be a JSON object."}


def test_draw_missing_drawing_data(client):
    resp = client.post("/draw", json={"imageId": "x.jpg"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "imageId and drawingData are required."}


def test_draw_composites_at_offset(client):
    identifier = _upload(client, make_image((100, 100), color=(255, 255, 255))).json()["filePath"]
    drawing = "data:image/png;base64," + base64.b64encode(
        make_image((10, 10), color=(0, 0, 255))
    ).decode()

    resp = client.post("/draw", json={"imageId": identifier, "drawingData": drawing, "x": 20, "y": 30})
    assert resp.status_code == 200, resp.text
    assert resp.json()["message"] == "Drawing applied successfully"

    img = Image.open(io.BytesIO(client.get(f"/images/{identifier}").content)).convert("RGB")
    assert img.getpixel((25, 35)) == (0, 0, 255)
    assert img.getpixel((5, 5)) == (255, 255, 255)


def test_draw_invalid_base64_is_400(client):
    resp = client.post("/draw", json={"imageId": "x.png", "drawingData": "***"})
    assert resp.status_code == 400


def test_draw_missing_image_is_404(client):
    drawing = base64.b64encode(make_image((4, 4))).decode()
    resp = client.post("/draw", json={"imageId": "ghost.png", "drawingData": drawing})
    assert resp.status_code == 404


def test_list_images(client, image_dir):
    resp = client.get("/images")
    assert resp.status_code == 404
    assert resp.json() == {"error": "No images found"}

    (image_dir / "readme.txt").write_bytes(b"x")
    resp = client.get("/images")
    assert resp.status_code == 404
    assert resp.json() == {"error": "No valid image files found"}

    identifier = _upload(client, make_image()).json()["filePath"]
    (image_dir / "c.PNG").write_bytes(make_image((5, 5)))
    resp = client.get("/images")
    assert resp.status_code == 200, resp.text
    payload = resp.json()
    filenames = [entry["filename"] for entry in payload["images"]]
    assert sorted(filenames) == sorted([identifier, "c.PNG"])
    assert all(entry["url"].endswith(f"/images/{entry['filename']}") for entry in payload["images"])


def test_list_images_paging(client, image_dir):
    for name in ["a.png", "b.png", "c.png"]:
        (image_dir / name).write_bytes(b"x")
    resp = client.get("/images", params={"offset": 1, "limit": 1})
    assert [e["filename"] for e in resp.json()["images"]] == ["b.png"]

    resp = client.get("/images", params={"limit": 0})
    assert resp.status_code == 400


def test_health_reports_volatile_index(client):
    _upload(client, make_image())
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "images": 1, "dedupEntries": 1, "dedupVolatile": True}
