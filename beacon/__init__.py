"""Retailer availability detection and candidate URL polling."""
