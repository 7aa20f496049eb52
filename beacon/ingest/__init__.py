"""Retailer integrations and candidate URL verification."""
