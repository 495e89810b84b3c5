"""HTTP control surface for migration projects."""
