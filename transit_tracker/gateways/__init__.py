"""HTTP clients for the geocoder and the transit data API."""
