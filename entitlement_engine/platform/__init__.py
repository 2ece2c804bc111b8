"""Platform concerns shared by the API and jobs: errors and the security log."""
