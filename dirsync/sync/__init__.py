"""Directory user models, eligibility rules, reconciliation and scheduling."""
