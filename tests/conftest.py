import io
import os
import tempfile
import zipfile

import pytest
from PIL import Image


def png_bytes(color=(200, 30, 30), size=(8, 12)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, "PNG")
    return buf.getvalue()


def make_cbz(path, names):
    """Writes a CBZ at `path` with one small PNG per entry in `names`."""
    os.makedirs(os.path.dirname(str(path)) or ".", exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for i, name in enumerate(names):
            if name.lower().endswith((".txt", ".xml")):
                zf.writestr(name, "not an image")
            else:
                zf.writestr(name, png_bytes((i * 20 % 256, 80, 160)))
    return str(path)


def make_corrupt_cbz(path):
    with open(path, "wb") as fh:
        fh.write(b"PK\x03\x04 this is not really a zip file")
    return str(path)


@pytest.fixture
def workspace_root(tmp_path, monkeypatch):
    """Redirects tempfile to a private directory so leftovers can be counted."""
    root = tmp_path / "tmproot"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root
