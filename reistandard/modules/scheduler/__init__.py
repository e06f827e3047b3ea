"""Scheduled notification tasks: storage, request handling and the delivery dispatcher."""
