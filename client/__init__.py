"""Terminal client for the encrypted chat relay."""
