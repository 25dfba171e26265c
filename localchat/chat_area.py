"""The chat view: messages grouped by day, and the line where new ones are typed."""

from __future__ import annotations

import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from .protocol import Message

__all__ = ["ChatArea", "date_label", "bubble_width", "group_by_day"]

MIN_BUBBLE_WIDTH = 100.0
CHAR_WIDTH = 8.0
BUBBLE_PADDING = 40.0
MAX_WIDTH_FRACTION = 0.7

SELF_BUBBLE = "#1976d2"
OTHER_BUBBLE = "#424242"
SELF_TEXT = "#ffffff"
OTHER_TEXT = "#f0f0f0"
SELF_TIMESTAMP = "#c8c8c8"
OTHER_TIMESTAMP = "#b4b4b4"
DATE_COLOR = "#a0a0a0"
SENDER_COLOR = "#b4b4b4"
INPUT_BACKGROUND = "#121418"
BACKGROUND = "#000000"

_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc)


def date_label(day: date, today: Optional[date] = None) -> str:
    """``Today``, ``Yesterday`` or the full date, as shown above a day's messages."""
    if today is None:
        today = datetime.now(timezone.utc).date()
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{_MONTHS[day.month - 1]} {day.day:02d}, {day.year:04d}"


def bubble_width(content: str, max_width: float) -> float:
    """Width of a message bubble, estimated from the length of its text."""
    estimated = len(content.encode("utf-8")) * CHAR_WIDTH + BUBBLE_PADDING
    return min(max(estimated, MIN_BUBBLE_WIDTH), max_width)


def group_by_day(messages: Iterable[Message]) -> List[Tuple[date, List[Message]]]:
    """Split messages into runs that share a (UTC) calendar day, keeping their order."""
    return [
        (day, list(run))
        for day, run in itertools.groupby(messages, key=lambda m: _utc(m.timestamp).date())
    ]


class ChatArea:
    """A scrolling list of message bubbles above an input line and a send button.

    ``on_send`` receives the typed text; the input is cleared when the text
    is blank or when ``on_send`` returns a true value.
    """

    def __init__(self, master, on_send: Callable[[str], object]) -> None:
        import tkinter as tk

        self._on_send = on_send
        self.frame = tk.Frame(master, background=BACKGROUND)

        body = tk.Frame(self.frame, background=BACKGROUND)
        body.pack(side="top", fill="both", expand=True)
        self.text = tk.Text(
            body, wrap="word", state="disabled", background=BACKGROUND,
            borderwidth=0, highlightthickness=0, padx=8, pady=12,
        )
        scrollbar = tk.Scrollbar(body, command=self.text.yview)
        self.text.configure(yscrollcommand=scrollbar.set)
        scrollbar.pack(side="right", fill="y")
        self.text.pack(side="left", fill="both", expand=True)
        self.text.tag_configure("date", justify="center", foreground=DATE_COLOR,
                                font=("TkDefaultFont", 9), spacing1=8, spacing3=8)
        self.text.tag_configure("sender", foreground=SENDER_COLOR,
                                font=("TkDefaultFont", 10, "bold"), spacing1=2)

        divider = tk.Frame(self.frame, height=1, background="#2d2d2d")
        divider.pack(side="top", fill="x")

        bar = tk.Frame(self.frame, background=BACKGROUND, height=70)
        bar.pack(side="bottom", fill="x")
        self.entry = tk.Entry(
            bar, background=INPUT_BACKGROUND, foreground=OTHER_TEXT,
            insertbackground=OTHER_TEXT, relief="flat", highlightthickness=0,
        )
        self.entry.pack(side="left", fill="x", expand=True, padx=(10, 8), pady=16, ipady=8)
        self.entry.bind("<Return>", lambda _event: self._send())
        self.button = tk.Button(
            bar, text="✈", command=self._send, background=SELF_BUBBLE,
            foreground=SELF_TEXT, activebackground=SELF_BUBBLE, relief="flat",
            font=("TkDefaultFont", 14, "bold"), width=2,
        )
        self.button.pack(side="right", padx=(0, 10), pady=16)

    def _send(self) -> None:
        text = self.entry.get()
        if not text.strip() or self._on_send(text):
            self.entry.delete(0, "end")

    def render(self, messages: Iterable[Message]) -> None:
        """Redraw the message list and scroll to its end."""
        self.text.update_idletasks()
        area = max(self.text.winfo_width(), 1)
        max_width = area * MAX_WIDTH_FRACTION
        today = datetime.now(timezone.utc).date()

        self.text.configure(state="normal")
        self.text.delete("1.0", "end")
        for tag in self.text.tag_names():
            if tag.startswith("bubble-"):
                self.text.tag_delete(tag)

        counter = itertools.count()
        for day, run in group_by_day(messages):
            self.text.insert("end", date_label(day, today) + "\n", ("date",))
            for message in run:
                self._insert_message(message, next(counter), area, max_width)
        self.text.configure(state="disabled")
        self.text.see("end")

    def _insert_message(self, message: Message, index: int, area: float, max_width: float) -> None:
        width = bubble_width(message.content, max_width)
        margin = int(max(area - width - 16, 0))
        bubble = f"bubble-{index}"
        stamp = f"bubble-{index}-time"
        if message.is_self:
            colors = (SELF_BUBBLE, SELF_TEXT, SELF_TIMESTAMP)
            margins = {"lmargin1": margin, "lmargin2": margin, "rmargin": 0}
        else:
            colors = (OTHER_BUBBLE, OTHER_TEXT, OTHER_TIMESTAMP)
            margins = {"lmargin1": 0, "lmargin2": 0, "rmargin": margin}
        fill, text_color, time_color = colors
        self.text.tag_configure(bubble, background=fill, foreground=text_color,
                                lmargincolor=BACKGROUND, font=("TkDefaultFont", 11),
                                spacing1=4, **margins)
        self.text.tag_configure(stamp, background=fill, foreground=time_color,
                                justify="right", font=("TkDefaultFont", 8),
                                spacing3=6, **margins)
        if not message.is_self:
            self.text.insert("end", message.sender + "\n", ("sender",))
        self.text.insert("end", message.content + "\n", (bubble,))
        self.text.insert("end", _utc(message.timestamp).strftime("%H:%M") + "\n", (stamp,))