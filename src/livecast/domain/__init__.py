"""Domain models, exceptions and component interfaces."""
