"""Off-chain collaborators and encoding helpers for `perpledger` markets."""
