"""Protocol stacks used by the outstation and the master console."""
