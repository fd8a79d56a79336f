"""JSON blueprints of the financial API."""
