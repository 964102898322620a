"""HTTP surface of the slackbot proxy."""
