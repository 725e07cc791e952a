"""Structured response generation."""
