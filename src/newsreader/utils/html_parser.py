"""RSS 内容的 HTML 处理."""

import math
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup

# 不参与正文的标签
NOISE_TAGS = ["script", "style", "noscript", "iframe", "nav", "footer", "header", "form"]

# Feedburner 等服务插入的分享/统计块
NOISE_CLASSES = re.compile(r"feedflare|share|social|tracking", re.IGNORECASE)

CJK_CHAR = re.compile(r"[぀-ヿ㐀-䶿一-鿿가-힯]")


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def html_to_text(html: str) -> str:
    """
    将文章 HTML 转换为纯文本（用于摘要输入和阅读时间估算）.

    去掉脚本、导航和分享块，每个块级元素占一行。
    """
    if not html:
        return ""

    soup = _soup(html)
    for element in soup(NOISE_TAGS):
        element.decompose()
    for element in soup.find_all(class_=NOISE_CLASSES):
        element.decompose()

    text = soup.get_text(separator="\n")
    lines = [re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)


def _is_tracking_pixel(img) -> bool:
    return img.get("width") in ("0", "1") or img.get("height") in ("0", "1")


def extract_first_image(html: str, base_url: str | None = None) -> str | None:
    """
    文章列表的缩略图：第一张有效图片的绝对 URL.

    跳过统计像素和 data: 内联图片；相对地址按 base_url 解析。
    """
    if not html:
        return None

    for img in _soup(html).find_all("img"):
        src = img.get("src") or img.get("data-src")
        if isinstance(src, list):
            src = src[0] if src else None
        if not src or src.startswith("data:") or _is_tracking_pixel(img):
            continue
        if base_url:
            return urljoin(base_url, src)
        return src

    return None


def count_words(text: str) -> int:
    """统计字数：中日韩文字按字符计，其余按空白分词."""
    if not text:
        return 0
    cjk = len(CJK_CHAR.findall(text))
    return cjk + len(CJK_CHAR.sub(" ", text).split())


def estimate_reading_time(text: str, wpm: int = 200) -> int:
    """估算阅读时间（分钟，至少 1 分钟）."""
    return max(1, math.ceil(count_words(text) / wpm))
