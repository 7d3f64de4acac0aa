"""Order and booking lifecycle, live mirrors, revenue and delivery progress."""
