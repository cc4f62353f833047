"""Streaming market data: feed client, message dispatch and the live price table."""
