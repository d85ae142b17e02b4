"""HTTP surface of the contract monitor."""
