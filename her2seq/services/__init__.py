"""Services implementing each step of the HER2 differential expression workflow."""
