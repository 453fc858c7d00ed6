"""
스트로크 목록을 Pillow로 그려 PNG data URL로 변환.
"""

import base64
from io import BytesIO

from PIL import Image, ImageDraw

from .strokes import Stroke

CANVAS_SIZE = (400, 400)
STROKE_WIDTH = 2
BACKGROUND = "white"
INK = "black"

DATA_URL_PREFIX = "data:image/png;base64,"


def _draw_stroke(draw: ImageDraw.ImageDraw, points: list[tuple[float, float]]) -> None:
    # moveTo(p0) 후 p0를 포함한 모든 점으로 lineTo (첫 구간은 길이 0)
    path = [points[0]] + list(points)
    draw.line(path, fill=INK, width=STROKE_WIDTH, joint="curve")
    # round cap: 양 끝에 선 두께만큼의 원
    r = STROKE_WIDTH / 2
    for x, y in (path[0], path[-1]):
        draw.ellipse((x - r, y - r, x + r, y + r), fill=INK)


def render_strokes_png(strokes: list[Stroke]) -> bytes:
    """흰 400x400 캔버스에 검은 둥근 끝 선으로 그려 PNG 바이트 반환.

    점이 없는 획은 건너뛰고, 빈 목록이면 빈 흰 캔버스.
    """
    img = Image.new("RGB", CANVAS_SIZE, BACKGROUND)
    draw = ImageDraw.Draw(img)

    for stroke in strokes:
        if not stroke.points:
            continue
        _draw_stroke(draw, stroke.points)

    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_data_url(png: bytes) -> str:
    return DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")


async def convert_strokes_to_image(strokes: list[Stroke]) -> str:
    """스트로크를 PNG data URL로 변환. I/O 대기 없이 바로 완료됨."""
    return to_data_url(render_strokes_png(strokes))
