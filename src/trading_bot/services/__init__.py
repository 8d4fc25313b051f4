"""Services: orchestration around the domain decisions."""
