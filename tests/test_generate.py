import base64
import io

from PIL import Image

from app import get_db


def decode(uri):
    return Image.open(io.BytesIO(base64.b64decode(uri.split(",", 1)[1])))


def colors(img):
    return {color for _, color in img.getcolors()}


def test_generate_requires_login(client):
    res = client.post("/api/generate", json={"first_name": "Jane", "last_name": "Doe"})
    assert res.status_code == 401


def test_generate_colored(admin_client):
    res = admin_client.post("/api/generate", json={
        "first_name": "Jane", "last_name": "Doe",
        "email": "jane@example.com", "color": "#0000FF",
    })
    assert res.status_code == 200
    image = res.get_json()["image"]
    assert image.startswith("data:image/png;base64,")
    assert colors(decode(image).convert("RGB")) == {(0, 0, 255), (255, 255, 255)}


def test_generate_blank_color_is_monochrome(admin_client):
    res = admin_client.post("/api/generate", json={
        "first_name": "Jane", "last_name": "Doe", "color": "",
    })
    assert decode(res.get_json()["image"]).mode == "L"


def test_generate_bad_color_falls_back_to_black(admin_client):
    res = admin_client.post("/api/generate", json={
        "first_name": "Jane", "last_name": "Doe", "color": "red",
    })
    assert res.status_code == 200
    img = decode(res.get_json()["image"]).convert("RGB")
    assert colors(img) == {(0, 0, 0), (255, 255, 255)}


def test_generate_persists_contact(admin_client):
    """Every generate call stores the submitted contact."""
    admin_client.post("/api/generate", json={
        "first_name": "Jane", "last_name": "Doe",
        "company": "Acme", "website": "", "color": "#FF00FF",
    })

    conn = get_db()
    row = conn.execute("SELECT * FROM vcards").fetchone()
    conn.close()
    assert row["first_name"] == "Jane"
    assert row["company"] == "Acme"
    assert row["website"] is None
    assert row["color"] == "#FF00FF"


def test_generate_missing_name(admin_client):
    res = admin_client.post("/api/generate", json={"first_name": "Jane"})
    assert res.status_code == 400
    assert res.get_json() == {"error": "last_name is required"}


def test_generate_too_large(admin_client):
    res = admin_client.post("/api/generate", json={
        "first_name": "x" * 3000, "last_name": "Doe",
    })
    assert res.status_code == 500
    assert res.get_json() == {"error": "Failed to generate QR code"}
