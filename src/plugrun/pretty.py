"""PrettyStream - 把 JSON 日志行渲染为彩色控制台输出

位于应用 logger 和 stdout 之间：logger 写入 JSON 行，
PrettyStream 按行切分、解析后通过 rich 输出。写入失败原样抛出，
由 FatalStreamHandler 转换为 StreamFailure。
"""

import json
import sys
from datetime import datetime
from typing import IO

from rich.console import Console
from rich.text import Text

_LEVEL_STYLES = {
    "debug": "blue",
    "info": "green",
    "warning": "yellow",
    "error": "red",
    "critical": "bold white on red",
}


class PrettyStream:
    """按行格式化 JSON 日志的文本流"""

    def __init__(self, out: IO[str] | None = None, console: Console | None = None):
        self._console = console or Console(
            file=out if out is not None else sys.stdout,
            highlight=False,
            soft_wrap=True,
        )
        self._buffer = ""

    def write(self, data: str) -> int:
        self._buffer += data
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if line:
                self._console.print(self.format_line(line))
        return len(data)

    def flush(self) -> None:
        self._console.file.flush()

    @staticmethod
    def format_line(line: str) -> Text:
        """渲染单行日志，非 JSON 行原样输出"""
        try:
            entry = json.loads(line)
        except ValueError:
            return Text(line)
        if not isinstance(entry, dict) or "msg" not in entry:
            return Text(line)

        level = str(entry.get("level", "info"))
        text = Text()
        if "time" in entry:
            stamp = datetime.fromtimestamp(entry["time"] / 1000).strftime("%H:%M:%S")
            text.append(f"{stamp} ", style="dim")
        text.append(f"{level.upper():<8}", style=_LEVEL_STYLES.get(level, "white"))
        if entry.get("name"):
            text.append(f"[{entry['name']}] ", style="dim")
        text.append(str(entry["msg"]))
        if entry.get("err"):
            text.append(f"\n{entry['err']}", style="red")
        return text
