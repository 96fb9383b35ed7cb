from string import Template

notification_email_template = Template(
    """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>$subject</title>
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background-color: #f8f9fa; padding: 20px; border-radius: 5px; margin-bottom: 20px; }
    .content { padding: 20px 0; }
    .footer { background-color: #f8f9fa; padding: 15px; border-radius: 5px; margin-top: 20px; font-size: 12px; color: #666; }
    .btn { display: inline-block; padding: 10px 20px; background-color: #007bff; color: white; text-decoration: none; border-radius: 5px; margin: 10px 0; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>$app_name</h1>
      <h2>$subject</h2>
    </div>
    <div class="content">
      <p>$message</p>
      $action
    </div>
    <div class="footer">
      <p>This is an automated notification from $app_name.</p>
      <p>Please do not reply to this email.</p>
    </div>
  </div>
</body>
</html>
"""
)

action_button_template = Template('<a href="$action_url" class="btn">Take Action</a>')
