"""外部资源注入。

用户输入里可以带 `-file:<路径>` 或 `-url:<地址>` 指令，manage_resources
负责读取这些资源，经 Conversation.add_reference 写入会话，并把指令从输入
中去掉。

- 文件：内容包装成 JSON {"path": ..., "contents": ...}。
- URL：httpx 拉取页面，BeautifulSoup 提取 body 文本并压缩空白。
超过 max_content_chars 的内容会被截断。
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Tuple
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from llm_core.domain.conversation import Conversation
from llm_core.domain.exceptions import InvalidRequestError, NetworkError, RequestTimeoutError, error_from_status

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_CHARS = 100_000
TRUNCATION_MARKER = "\n...[truncated]"

_COMMAND = re.compile(r"-(url|file):(\S+)")


class ResourceLoader:
    def __init__(self, http_timeout: float = 30.0, max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS):
        self.http_timeout = http_timeout
        self.max_content_chars = max_content_chars

    def load_file(self, path: str) -> str:
        file_path = Path(path).expanduser()
        if not file_path.is_file():
            raise InvalidRequestError(f"invalid file path: {path}")
        try:
            contents = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise InvalidRequestError(f"failed to read file {path}: {e}")
        if not contents.strip():
            raise InvalidRequestError(f"file is empty: {path}")
        return json.dumps(
            {"path": path, "contents": self._truncate(contents)},
            ensure_ascii=False,
        )

    def load_url(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidRequestError(f"invalid URL: {url}")
        try:
            with httpx.Client(timeout=self.http_timeout, follow_redirects=True) as client:
                resp = client.get(url)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"timed out fetching {url}: {e}")
        except httpx.RequestError as e:
            raise NetworkError(f"failed to fetch {url}: {e}")
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, f"failed to fetch {url}", provider="resources")

        soup = BeautifulSoup(resp.text, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        root = soup.body or soup
        text = " ".join(root.get_text(separator=" ").split())
        if not text:
            raise InvalidRequestError(f"no text content found at {url}")
        return self._truncate(text)

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_content_chars:
            return text
        return text[: self.max_content_chars] + TRUNCATION_MARKER


def manage_resources(
    conversation: Conversation,
    user_input: str,
    loader: ResourceLoader,
) -> Tuple[str, List[str]]:
    """处理输入中的资源指令。

    Returns:
        (去掉指令后的输入, 找到的资源列表，形如 "file:<path>" / "url:<url>")
    """

    found: List[str] = []
    if not user_input:
        return user_input, found

    for match in _COMMAND.finditer(user_input):
        kind, target = match.group(1), match.group(2)
        content = loader.load_url(target) if kind == "url" else loader.load_file(target)
        conversation.add_reference(target, content)
        found.append(f"{kind}:{target}")
        logger.info("Added resource reference", extra={"extra": {"kind": kind, "source": target}})

    clean = " ".join(_COMMAND.sub("", user_input).split())
    return clean, found
