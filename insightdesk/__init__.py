"""Guest and member workspace core for the insightdesk API."""
