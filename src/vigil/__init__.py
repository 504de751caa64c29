"""Keep the machine awake until an adjustable deadline."""
