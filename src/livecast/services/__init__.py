"""Stream components and the orchestrator that supervises them."""
