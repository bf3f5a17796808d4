"""
NFT marketplace backend.

A FastAPI service for browsing NFTs, keeping a cart and placing orders, with
a background transaction monitor that moves orders to completed or failed
as their on-chain payment transactions confirm or fail.
"""
