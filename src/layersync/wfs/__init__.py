"""WFS query layer: client, spatial predicates, failure taxonomy, retries."""
