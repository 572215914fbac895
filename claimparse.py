"""
claimparse.py - turn the free game claim script's stdout into a chat summary.

The claim script logs one storefront after another.  Titles, links and
ownership notices for one store can arrive in either order and may be
spread over several lines, so the lines are classified first and then
folded into a list of offers which is finally grouped by store.

render(output, mode) is the only entry point the bot needs.
"""

import re
from collections import namedtuple

# canonical render order, and how each store is shown in chat
STORES = ("gog", "epic-games")
storename = { "gog"       : "GoG",
              "epic-games": "Epic Games"
            }

# link shapes that identify a store's offer page
storeurl = { "gog"       : re.compile(r'https?://(?:www\.)?gog\.com/\S+'),
             "epic-games": re.compile(r'https?://store\.epicgames\.com/\S+')
           }

MODES = ("run", "debug", "raw")

ANNOTATION = "Processing line: "
NO_GIVEAWAY = "Currently no free giveaway!"
FREE_GAME = "Current free game:"
FREE_GAMES = "Free games:"
OWNED = "Already in library!"
NOTHING_FOUND = "No free games found."

# Pre-compiled regex patterns
RE_ANSI = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')  # terminal colour codes
RE_SECTION = re.compile(r'started checking (' + '|'.join(map(re.escape, STORES)) + r')\b')
RE_QUOTED = re.compile(r"'([^']+)'")
RE_TITLE_LINK = re.compile(r'^(.*?)\s+-\s+(https?://\S+)$')

# classified line events
SectionStart = namedtuple("SectionStart", "store")
NoGiveaway = namedtuple("NoGiveaway", "store")
FreeGameTitle = namedtuple("FreeGameTitle", "store title link")
FreeGameLink = namedtuple("FreeGameLink", "store url")
AlreadyOwned = namedtuple("AlreadyOwned", "store hint")


class Offer:
    """One store's currently advertised free game.

    index is the offer's position in creation order and stays its
    handle even when later lines fill in the link or ownership.
    """
    def __init__(self, index, store, title=None, link=None, owned=False):
        self.index = index
        self.store = store
        self.title = title
        self.link = link
        self.owned = owned

    def astuple(self):
        return (self.store, self.title, self.link, self.owned)

    def __eq__(self, other):
        if not isinstance(other, Offer):
            return NotImplemented
        return self.astuple() == other.astuple()

    def __repr__(self):
        return f"Offer({self.index}, {self.store!r}, {self.title!r}, {self.link!r}, owned={self.owned})"


def cleanLine(line):
    # strip colour codes and surrounding whitespace
    return RE_ANSI.sub('', line).strip()

def splitTitle(text):
    """Split 'Title - https://store/url' into (title, url).

    Only links in a known store shape are split off; anything else is
    part of the title.  An empty title comes back as None.
    """
    m = RE_TITLE_LINK.match(text)
    if m and any(p.fullmatch(m.group(2)) for p in storeurl.values()):
        return (m.group(1).strip() or None, m.group(2))
    return (text.strip() or None, None)

def titleOf(line):
    # the title a cleaned line announces, or None
    if FREE_GAME in line:
        return splitTitle(line.partition(FREE_GAME)[2])[0]
    return None

def classify(lines):
    """Yield classified events for an iterable of raw output lines.

    Tracks the open store section so store-scoped events carry their
    store (None before the first section).  Continuation lines of a
    multi-line 'Free games:' block are consumed here and never seen as
    lines of their own.  Unrecognised lines yield nothing.
    """
    lines = [cleanLine(l) for l in lines]
    store = None
    previous = None
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line:
            continue
        if line.startswith(ANNOTATION):
            # our own debug echo
            previous = line
            continue
        m = RE_SECTION.search(line)
        if m:
            store = m.group(1)
            yield SectionStart(store)
        elif NO_GIVEAWAY in line:
            yield NoGiveaway(store)
        elif FREE_GAME in line:
            title, link = splitTitle(line.partition(FREE_GAME)[2])
            yield FreeGameTitle(store, title, link)
        elif FREE_GAMES in line:
            urls = RE_QUOTED.findall(line.partition(FREE_GAMES)[2])
            while i < len(lines) and lines[i].startswith("'"):
                urls += RE_QUOTED.findall(lines[i])
                i += 1
            for url in urls:
                yield FreeGameLink(store, url.strip())
        elif OWNED in line:
            hint = titleOf(previous) if previous and FREE_GAME in previous else previous
            yield AlreadyOwned(store, hint)
        previous = line


class OfferAccumulator:
    """Fold classified events into an ordered list of offers.

    One instance per parse; nothing here is shared between calls.
    """
    def __init__(self):
        self.offers = []
        self.pending = {}       # store -> links not yet given to a title, oldest first
        self.observed = []      # stores in the order their sections opened
        self.nogiveaway = set()
        self.handlers = { SectionStart : self.sectionStart,
                          NoGiveaway   : self.noGiveaway,
                          FreeGameTitle: self.freeGameTitle,
                          FreeGameLink : self.freeGameLink,
                          AlreadyOwned : self.alreadyOwned }

    def feed(self, event):
        self.handlers[type(event)](event)

    def sectionStart(self, event):
        if event.store not in self.observed:
            self.observed.append(event.store)

    def noGiveaway(self, event):
        if event.store is None: return
        self.nogiveaway.add(event.store)
        self.pending.pop(event.store, None)

    def _accepts(self, store):
        return store is not None and store not in self.nogiveaway

    def _newOffer(self, store, title, link):
        offer = Offer(len(self.offers), store, title, link)
        self.offers.append(offer)
        return offer

    def freeGameTitle(self, event):
        if not self._accepts(event.store): return
        link = event.link
        if link is None and self.pending.get(event.store):
            link = self.pending[event.store].pop(0)
        self._newOffer(event.store, event.title, link)

    def freeGameLink(self, event):
        if not self._accepts(event.store): return
        # a title that came first is still waiting for its link
        for offer in self.offers:
            if offer.store == event.store and offer.link is None:
                offer.link = event.url
                return
        self.pending.setdefault(event.store, []).append(event.url)

    def _target(self, store, hint):
        mine = [o for o in reversed(self.offers) if o.store == store]
        if hint:
            for offer in mine:
                if offer.title == hint:
                    return offer
        for offer in mine:
            if not offer.owned:
                return offer
        return None

    def alreadyOwned(self, event):
        if event.store is None: return
        offer = self._target(event.store, event.hint)
        if offer is not None:
            offer.owned = True

    def finish(self):
        """Give leftover links an untitled offer and return the offer list."""
        for store in STORES:
            for link in self.pending.pop(store, []):
                if self._accepts(store):
                    self._newOffer(store, None, link)
        return self.offers


def parse(lines):
    """Return (offers, observed stores, stores with no giveaway) for output lines."""
    acc = OfferAccumulator()
    for event in classify(lines):
        acc.feed(event)
    offers = acc.finish()
    return offers, list(acc.observed), set(acc.nogiveaway)

def formatOffer(offer):
    title = offer.title if offer.title is not None else "Unknown"
    status = "Already in library" if offer.owned else "New"
    if offer.link:
        return f"{storename[offer.store]} - [{title}]({offer.link}) ({status})"
    return f"{storename[offer.store]} - {title} ({status})"

def formatSummary(offers, observed, nogiveaway=()):
    if not offers and not observed:
        return NOTHING_FOUND
    out = []
    for store in STORES:
        if store not in observed:
            continue
        mine = [o for o in offers if o.store == store]
        if store in nogiveaway or not mine:
            out.append(f"{storename[store]} - {NO_GIVEAWAY}")
        else:
            out += [formatOffer(o) for o in mine]
    if not out:
        return NOTHING_FOUND
    return "\n".join(out)

def render(output, mode="run"):
    """Render claim script output for chat.

    raw hands the text back untouched, debug prefixes one
    'Processing line: ...' echo per input line, run is the bare summary.
    """
    if mode not in MODES:
        raise ValueError(f"unknown mode {mode!r}, expected one of {', '.join(MODES)}")
    if mode == "raw":
        return output
    # split on newlines only; a bare \r or form feed stays inside its line
    text = output.strip()
    lines = [l[:-1] if l.endswith("\r") else l for l in text.split("\n")] if text else []
    summary = formatSummary(*parse(lines))
    if mode == "debug":
        return "\n".join([ANNOTATION + line for line in lines] + [summary])
    return summary
