"""Card Sync — HTTP trigger surface."""
