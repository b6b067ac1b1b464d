"""Result formatting and presentation."""
