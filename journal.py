# journal.py

import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List

logger = logging.getLogger(__name__)


class TradeJournal:
    """Append-only JSON array of trade records, rewritten on every append.

    Single writer only: the file is read, extended and written back whole.
    """

    def __init__(self, path: str):
        self.path = path

    def read(self) -> List[Dict]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, 'r', encoding='utf-8') as fh:
            content = fh.read()
        return json.loads(content) if content.strip() else []

    def append(self, record: Dict) -> Dict:
        entry = {'timestamp': datetime.now(timezone.utc).isoformat(), **record}

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        logs = self.read()
        logs.append(entry)
        with open(self.path, 'w', encoding='utf-8') as fh:
            json.dump(logs, fh, indent=2)

        logger.info(f"Journaled {entry.get('action')} @ {entry.get('price')}")
        return entry

    def recent(self, limit: int = 5) -> List[Dict]:
        """Last ``limit`` records, newest first."""
        if limit <= 0:
            return []
        return list(reversed(self.read()[-limit:]))
