"""Pure booking and payment rules with no database or processor access."""
