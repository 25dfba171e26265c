"""The side list of discovered peers, with a refresh button."""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from .protocol import IpcPeer

__all__ = ["SideMenu", "toggle_selection"]

ACCENT = "#1976d2"
SELECTED = "#1f4e7a"
HOVER = "#232328"
LABEL = "#dcdcdc"
SUBTLE = "#9696a0"
BACKGROUND = "#121216"
PEER_ICON = "👤"


def toggle_selection(current: Optional[str], peer_id: str) -> Optional[str]:
    """Selecting the peer already chosen deselects it; any other peer becomes the choice."""
    return None if current == peer_id else peer_id


class SideMenu:
    """Lists peers; a click selects or deselects one, the refresh button asks for the list again."""

    def __init__(
        self,
        master,
        on_select: Callable[[Optional[str]], None],
        on_refresh: Callable[[], None],
    ) -> None:
        import tkinter as tk

        self._on_select = on_select
        self._on_refresh = on_refresh
        self._peers: List[IpcPeer] = []
        self._selected: Optional[str] = None
        self._hovered: Optional[int] = None

        self.frame = tk.Frame(master, background=BACKGROUND, width=220)

        header = tk.Frame(self.frame, background=BACKGROUND, height=40)
        header.pack(side="top", fill="x", padx=8, pady=(12, 8))
        tk.Label(header, text="Peers", background=BACKGROUND, foreground=LABEL,
                 font=("TkDefaultFont", 14, "bold")).pack(side="left")
        refresh = tk.Button(header, text="⟳", command=self._on_refresh, background=ACCENT,
                            foreground=LABEL, activebackground=ACCENT, relief="flat",
                            cursor="hand2", width=2)
        refresh.pack(side="right")

        tk.Frame(self.frame, height=1, background="#323237").pack(side="top", fill="x")

        self.empty = tk.Frame(self.frame, background=BACKGROUND)
        tk.Label(self.empty, text="No peers found", background=BACKGROUND, foreground=SUBTLE,
                 font=("TkDefaultFont", 11, "italic")).pack(pady=(40, 8))
        tk.Label(self.empty, text="Try refreshing the list", background=BACKGROUND,
                 foreground=SUBTLE, font=("TkDefaultFont", 9)).pack(pady=(0, 40))

        self.listing = tk.Frame(self.frame, background=BACKGROUND)
        self.listbox = tk.Listbox(
            self.listing, activestyle="none", background=BACKGROUND, foreground=LABEL,
            selectbackground=BACKGROUND, selectforeground=LABEL, borderwidth=0,
            highlightthickness=0, font=("TkFixedFont", 11), cursor="hand2",
        )
        scrollbar = tk.Scrollbar(self.listing, command=self.listbox.yview)
        self.listbox.configure(yscrollcommand=scrollbar.set)
        scrollbar.pack(side="right", fill="y")
        self.listbox.pack(side="left", fill="both", expand=True, pady=12)
        self.listbox.bind("<ButtonRelease-1>", self._clicked)
        self.listbox.bind("<Motion>", self._moved)
        self.listbox.bind("<Leave>", lambda _event: self._hover(None))

        self.empty.pack(side="top", fill="both", expand=True)

    def render(self, peers: Sequence[IpcPeer], selected: Optional[str]) -> None:
        """Show ``peers``, highlighting the one whose id is ``selected``."""
        self._peers = list(peers)
        self._selected = selected
        self._hovered = None
        self.listbox.delete(0, "end")
        for peer in self._peers:
            self.listbox.insert("end", f" {PEER_ICON}  {peer.username}")
        self._paint()
        if self._peers:
            self.empty.pack_forget()
            self.listing.pack(side="top", fill="both", expand=True)
        else:
            self.listing.pack_forget()
            self.empty.pack(side="top", fill="both", expand=True)

    def _paint(self) -> None:
        for index, peer in enumerate(self._peers):
            if peer.id == self._selected:
                fill = SELECTED
            elif index == self._hovered:
                fill = HOVER
            else:
                fill = BACKGROUND
            self.listbox.itemconfigure(index, background=fill, selectbackground=fill)

    def _index_at(self, y: int) -> Optional[int]:
        if not self._peers:
            return None
        index = self.listbox.nearest(y)
        box = self.listbox.bbox(index)
        if box is None or not box[1] <= y < box[1] + box[3]:
            return None
        return index

    def _clicked(self, event) -> None:
        index = self._index_at(event.y)
        self.listbox.selection_clear(0, "end")
        if index is None:
            return
        self._on_select(toggle_selection(self._selected, self._peers[index].id))

    def _moved(self, event) -> None:
        self._hover(self._index_at(event.y))

    def _hover(self, index: Optional[int]) -> None:
        if index != self._hovered:
            self._hovered = index
            self._paint()