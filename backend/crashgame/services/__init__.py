"""Domain services: the round engine plus its price, wallet and archive collaborators."""
