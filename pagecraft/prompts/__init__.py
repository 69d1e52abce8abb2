# Prompt templates
