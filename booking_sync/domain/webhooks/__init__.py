"""Webhook ingestion and reconciliation"""
