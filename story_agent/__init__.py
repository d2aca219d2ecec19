"""Stories, settings, tools and the storyteller turn loop."""
