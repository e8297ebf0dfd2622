"""Watching the chain for swap transaction confirmations and CSV expiry."""